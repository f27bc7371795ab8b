"""
TerminalBridge: request/response API over the file bridge.

    async with TerminalBridge(load_config()) as bridge:
        balance = await bridge.get_balance()
        ticket = await bridge.place_market_order("BTCUSD", "buy", 0.01, stop_loss=106000)

Every call goes through `send_command`, which admits the command (raising
BridgeBusy immediately if another one is outstanding), waits for the terminal
to pick up any earlier command file, writes it, and awaits the answer. Convenience methods only shape parameters and pick
the command-family timeout.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Set

from .command_schema import MARKET_SIDES, Command, validate_command_dict
from .config import BridgeConfig
from .correlator import CommandCorrelator
from .errors import BridgeBusy, BridgeError
from .file_channel import FileChannel
from .transport import FilePoller


logger = logging.getLogger(__name__)


@dataclass
class AccountInfo:
    balance: float = 0.0
    equity: float = 0.0
    margin: float = 0.0
    free_margin: float = 0.0
    margin_level: float = 0.0
    currency: str = "USD"
    leverage: int = 30
    account_number: Optional[str] = None
    broker: str = "Unknown"
    fetched_at: float = 0.0

    @classmethod
    def from_result(cls, result: Dict[str, Any], fetched_at: float) -> "AccountInfo":
        # The EA has shipped both camelCase and snake_case keys.
        def pick(*keys: str, default: Any = None) -> Any:
            for k in keys:
                if result.get(k) is not None:
                    return result[k]
            return default

        number = pick("accountNumber", "account_number")
        return cls(
            balance=float(pick("balance", default=0.0)),
            equity=float(pick("equity", default=0.0)),
            margin=float(pick("margin", default=0.0)),
            free_margin=float(pick("freeMargin", "free_margin", default=0.0)),
            margin_level=float(pick("marginLevel", "margin_level", default=0.0)),
            currency=str(pick("currency", default="USD")),
            leverage=int(pick("leverage", default=30)),
            account_number=str(number) if number is not None else None,
            broker=str(pick("broker", default="Unknown")),
            fetched_at=fetched_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TerminalBridge:
    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        *,
        channel: Optional[FileChannel] = None,
        correlator: Optional[CommandCorrelator] = None,
    ) -> None:
        self.config = config or BridgeConfig()
        self.channel = channel or FileChannel(self.config.folder, self.config.command_file, self.config.response_file)
        self.correlator = correlator or CommandCorrelator()
        self.poller = FilePoller(
            self.channel,
            self.correlator,
            submit_interval=self.config.submit_interval,
            collect_interval=self.config.collect_interval,
            heartbeat_command=self.config.heartbeat_command,
            heartbeat_timeout=self.config.timeout_for(self.config.heartbeat_command or "ping"),
            on_heartbeat=self._on_heartbeat,
        )
        self.connected = False
        self.last_heartbeat: Optional[float] = None
        self._account: Optional[AccountInfo] = None
        self._refresh_tasks: Set["asyncio.Task[None]"] = set()

    async def __aenter__(self) -> "TerminalBridge":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    @property
    def running(self) -> bool:
        return self.poller.running

    async def start(self) -> None:
        """Remove files left by a previous run, then start polling."""
        self.channel.folder.mkdir(parents=True, exist_ok=True)
        self.channel.cleanup()
        self.poller.start()
        logger.info("Terminal bridge started on %s", self.channel.folder)

    async def stop(self) -> None:
        tasks, self._refresh_tasks = self._refresh_tasks, set()
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.poller.stop()
        self.connected = False
        logger.info("Terminal bridge stopped")

    async def send_command(self, name: str, params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> Any:
        """Send one command and return the terminal's `result`.

        Raises BridgeBusy, CommandTimeout or CommandRejected. BridgeBusy is
        raised at once when a command is outstanding, and after `file_wait`
        seconds when the terminal has not consumed the last command file.
        """
        cmd = Command(name=name, params=dict(params or {}))
        if not self.correlator.is_idle():
            raise BridgeBusy(self.correlator.pending.command.id)
        if not await self.poller.wait_for_command_file(self.config.file_wait):
            logger.warning("Command file still unconsumed after %.2fs; refusing %s", self.config.file_wait, name)
        # dispatch re-checks both conditions
        slot = self.poller.dispatch(cmd, self.config.timeout_for(name, timeout))
        return await slot.future

    async def enqueue_command(self, name: str, params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> Any:
        """Like send_command, but waits its turn instead of raising BridgeBusy."""
        cmd = Command(name=name, params=dict(params or {}))
        fut = self.poller.enqueue(cmd, self.config.timeout_for(name, timeout))
        return await fut

    def get_current_pending_command(self) -> Optional[Command]:
        slot = self.correlator.pending
        return slot.command if slot is not None else None

    def clear_pending_command(self) -> Optional[Command]:
        cmd = self.correlator.clear()
        if cmd is not None:
            self.channel.discard_command(cmd.id)
        return cmd

    def status(self) -> Dict[str, Any]:
        slot = self.correlator.pending
        return {
            "running": self.running,
            "state": self.correlator.state.value,
            "pending_id": slot.command.id if slot else None,
            "pending_command": slot.command.name if slot else None,
            "pending_age": round(self.correlator.now() - slot.submitted_at, 3) if slot else None,
            "queue_depth": self.poller.queue_depth,
            "connected": self.connected,
            "last_heartbeat": self.last_heartbeat,
            "command_file": str(self.channel.command_path),
            "response_file": str(self.channel.response_path),
        }

    # -- account ---------------------------------------------------------

    async def get_balance(self) -> Any:
        return await self.send_command("getBalance")

    async def get_account_info(self, queued: bool = False) -> AccountInfo:
        if queued:
            result = await self.enqueue_command("getAccountInfo")
        else:
            result = await self.send_command("getAccountInfo")
        if not isinstance(result, dict):
            raise BridgeError(f"unexpected getAccountInfo result: {result!r}")
        self._account = AccountInfo.from_result(result, fetched_at=time.monotonic())
        logger.info(
            "Account info: balance=%s equity=%s free_margin=%s leverage=%s",
            self._account.balance,
            self._account.equity,
            self._account.free_margin,
            self._account.leverage,
        )
        return self._account

    async def refresh_account_info(self, force: bool = False, queued: bool = False) -> AccountInfo:
        """Return cached account info unless older than `account_cache_ttl`."""
        cached = self._account
        if not force and cached is not None and time.monotonic() - cached.fetched_at < self.config.account_cache_ttl:
            return cached
        try:
            return await self.get_account_info(queued=queued)
        except BridgeError as exc:
            if cached is None:
                raise
            logger.warning("Could not refresh account info, serving cached copy: %s", exc)
            return cached

    async def get_account_stats(self) -> Dict[str, Any]:
        """Account snapshot plus position, margin and drawdown figures."""
        info = await self.refresh_account_info()
        orders = await self.get_open_orders()

        lots = sum(float(o.get("lot") or o.get("lots") or 0.0) for o in orders)
        symbols = sorted({str(o["symbol"]) for o in orders if o.get("symbol")})
        usage = info.margin / info.equity * 100 if info.margin > 0 and info.equity > 0 else 0.0
        if info.balance > 0:
            drawdown = (info.balance - info.equity) / info.balance * 100
            equity_pct = info.equity / info.balance * 100
        else:
            drawdown, equity_pct = 0.0, 100.0
        return {
            "account": info.to_dict(),
            "positions": {"count": len(orders), "total_lots": round(lots, 2), "symbols": symbols},
            "margins": {
                "used": round(info.margin, 2),
                "free": round(info.free_margin, 2),
                "level": round(info.margin_level, 2),
                "usage_percent": round(usage, 2),
            },
            "risk": {"drawdown": round(drawdown, 2), "equity_percent": round(equity_pct, 2)},
        }

    async def check_connection(self) -> bool:
        try:
            self.connected = await self.ping() == "pong"
        except BridgeError as exc:
            logger.warning("Terminal connection check failed: %s", exc)
            self.connected = False
        return self.connected

    async def ping(self) -> Any:
        return await self.send_command("ping")

    # -- orders ----------------------------------------------------------

    async def place_market_order(
        self,
        symbol: str,
        side: str,
        lots: float,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        comment: str = "",
        timeout: Optional[float] = None,
    ) -> Any:
        cmd = validate_command_dict(
            {
                "command": "marketOrder",
                "symbol": symbol,
                "type": side.lower(),
                "lot": lots,
                "sl": stop_loss,
                "tp": take_profit,
                "comment": comment,
            }
        )
        result = await self.send_command(cmd.name, cmd.params, timeout)
        self._schedule_account_refresh()
        return result

    async def place_limit_order(
        self,
        symbol: str,
        side: str,
        lots: float,
        price: float,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        comment: str = "",
        timeout: Optional[float] = None,
    ) -> Any:
        side = side.lower()
        if side in MARKET_SIDES:
            side = f"{side} limit"
        cmd = validate_command_dict(
            {
                "command": "limitOrder",
                "symbol": symbol,
                "type": side,
                "lot": lots,
                "price": price,
                "sl": stop_loss,
                "tp": take_profit,
                "comment": comment,
            }
        )
        return await self.send_command(cmd.name, cmd.params, timeout)

    async def close_order(self, ticket: int, timeout: Optional[float] = None) -> Any:
        result = await self.send_command("closeMarketOrder", {"ticket": int(ticket)}, timeout)
        self._schedule_account_refresh()
        return result

    async def close_pending_order(self, ticket: int, timeout: Optional[float] = None) -> Any:
        return await self.send_command("closePendingOrder", {"ticket": int(ticket)}, timeout)

    async def modify_order(
        self,
        ticket: int,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        price: Optional[float] = None,
        comment: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        params = {"ticket": int(ticket), "sl": stop_loss, "tp": take_profit, "price": price, "comment": comment}
        return await self.send_command("modifyOrder", params, timeout)

    async def get_open_orders(self) -> List[Dict[str, Any]]:
        return _orders(await self.send_command("getAllMarketOrders"))

    async def get_pending_orders(self) -> List[Dict[str, Any]]:
        return _orders(await self.send_command("getAllPendingOrders"))

    async def close_all_market_orders(self, timeout: Optional[float] = None) -> Any:
        return await self.send_command("closeAllMarketOrders", timeout=timeout)

    async def close_all_pending_orders(self, timeout: Optional[float] = None) -> Any:
        return await self.send_command("closeAllPendingOrders", timeout=timeout)

    def _schedule_account_refresh(self) -> None:
        delay = self.config.post_trade_refresh_delay
        if delay is None or not self.running:
            return
        task = asyncio.create_task(self._refresh_after(delay))
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)

    async def _refresh_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            # Queued so a caller's next send_command is not turned away as busy.
            await self.refresh_account_info(force=True, queued=True)
        except BridgeError as exc:
            logger.warning("Post-trade account refresh failed: %s", exc)

    def _on_heartbeat(self, ok: bool, value: Any) -> None:
        self.connected = ok
        if ok:
            self.last_heartbeat = time.time()


def _orders(result: Any) -> List[Dict[str, Any]]:
    # Either a bare list or {"orders": [...]}.
    if result is None:
        return []
    if isinstance(result, dict):
        return list(result.get("orders") or [])
    return list(result)


__all__ = ["AccountInfo", "TerminalBridge"]
