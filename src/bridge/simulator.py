"""
Stand-in for the MT4 expert advisor, for development and tests.

`TerminalSimulator.process_once()` does what the EA does on each timer
event: read `command.txt` if it exists, delete it, execute the command
against a fake account, and write `response.txt` with `{id, result}` or
`{id, error}`.

Design aims:
- Pure Python, stdlib only
- Deterministic and testable: process_once returns the response it wrote
- Atomic writes for the response file, like the real EA should do
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import json
import logging
import time

from . import command_schema
from .command_schema import Response
from .file_channel import atomic_write


logger = logging.getLogger(__name__)


@dataclass
class SimOrder:
    ticket: int
    symbol: str
    type: str
    lot: float
    price: float
    sl: float = 0.0
    tp: float = 0.0
    comment: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticket": self.ticket,
            "symbol": self.symbol,
            "type": self.type,
            "lot": self.lot,
            "price": self.price,
            "sl": self.sl,
            "tp": self.tp,
            "comment": self.comment,
        }


@dataclass
class SimAccount:
    balance: float = 10000.0
    currency: str = "USD"
    leverage: int = 30
    account_number: str = "1000001"
    broker: str = "Simulated"
    market_price: float = 100.0
    next_ticket: int = 77600000
    market_orders: Dict[int, SimOrder] = field(default_factory=dict)
    pending_orders: Dict[int, SimOrder] = field(default_factory=dict)

    @property
    def margin(self) -> float:
        return sum(o.lot * o.price for o in self.market_orders.values()) / self.leverage

    def take_ticket(self) -> int:
        t = self.next_ticket
        self.next_ticket += 1
        return t


class TerminalSimulator:
    def __init__(
        self,
        folder: Union[str, Path],
        command_file: str = "command.txt",
        response_file: str = "response.txt",
        account: Optional[SimAccount] = None,
    ) -> None:
        self.folder = Path(folder)
        self.command_path = self.folder / command_file
        self.response_path = self.folder / response_file
        self.account = account or SimAccount()
        self.handled: List[Response] = []

    def process_once(self) -> Optional[Response]:
        """Answer the current command file, if any. Returns the response written."""
        try:
            text = self.command_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        self.command_path.unlink(missing_ok=True)

        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.warning("Unparseable command file: %s", exc)
            return None
        cmd_id = raw.get("id") if isinstance(raw, dict) else None
        if not cmd_id:
            logger.warning("Command without id ignored: %s", text)
            return None

        try:
            cmd = command_schema.validate_command_dict(raw)
            resp = Response(id=cmd_id, result=self.execute(cmd.name, cmd.params))
        except (KeyError, ValueError) as exc:
            resp = Response(id=cmd_id, error=str(exc).strip("'\""))

        atomic_write(self.response_path, command_schema.dumps(resp).encode("utf-8"))
        self.handled.append(resp)
        logger.debug("Simulated %s -> %s", raw.get("command"), command_schema.dumps(resp))
        return resp

    def execute(self, name: str, params: Dict[str, Any]) -> Any:
        acct = self.account
        if name == "ping":
            return "pong"
        if name == "getBalance":
            return acct.balance
        if name == "getAccountInfo":
            margin = acct.margin
            return {
                "balance": acct.balance,
                "equity": acct.balance,
                "margin": margin,
                "freeMargin": acct.balance - margin,
                "marginLevel": (acct.balance / margin * 100) if margin else 0.0,
                "currency": acct.currency,
                "leverage": acct.leverage,
                "accountNumber": acct.account_number,
                "broker": acct.broker,
            }
        if name == "marketOrder":
            order = self._new_order(params, acct.market_price)
            acct.market_orders[order.ticket] = order
            return {"ticket": order.ticket, "price": order.price}
        if name == "limitOrder":
            order = self._new_order(params, params["price"])
            acct.pending_orders[order.ticket] = order
            return {"ticket": order.ticket, "price": order.price}
        if name == "closeMarketOrder":
            order = self._pop(acct.market_orders, params["ticket"])
            return {"ticket": order.ticket, "closed": True}
        if name == "closePendingOrder":
            order = self._pop(acct.pending_orders, params["ticket"])
            return {"ticket": order.ticket, "deleted": True}
        if name == "closeAllMarketOrders":
            closed = sorted(acct.market_orders)
            acct.market_orders.clear()
            return {"closed": closed}
        if name == "closeAllPendingOrders":
            deleted = sorted(acct.pending_orders)
            acct.pending_orders.clear()
            return {"deleted": deleted}
        if name == "getAllMarketOrders":
            return {"orders": [o.to_dict() for o in acct.market_orders.values()]}
        if name == "getAllPendingOrders":
            return {"orders": [o.to_dict() for o in acct.pending_orders.values()]}
        if name == "modifyOrder":
            ticket = params["ticket"]
            order = acct.market_orders.get(ticket) or acct.pending_orders.get(ticket)
            if order is None:
                raise ValueError("Invalid ticket")
            for key in ("sl", "tp", "price", "comment"):
                if params.get(key) is not None:
                    setattr(order, key, params[key])
            return order.to_dict()
        raise ValueError(f"Unknown command: {name}")

    def _new_order(self, params: Dict[str, Any], price: float) -> SimOrder:
        return SimOrder(
            ticket=self.account.take_ticket(),
            symbol=params["symbol"],
            type=params["type"],
            lot=params["lot"],
            price=float(price),
            sl=float(params.get("sl") or 0.0),
            tp=float(params.get("tp") or 0.0),
            comment=params.get("comment") or "",
        )

    @staticmethod
    def _pop(orders: Dict[int, SimOrder], ticket: int) -> SimOrder:
        order = orders.pop(ticket, None)
        if order is None:
            raise ValueError("Invalid ticket")
        return order


def process_once(folder: Path) -> Optional[Response]:
    """Answer one command in `folder` with a fresh simulated account."""
    return TerminalSimulator(folder).process_once()


def watch_loop(folder: Path, poll_interval: float = 0.5, simulator: Optional[TerminalSimulator] = None) -> None:
    """Blocking loop that answers commands in `folder` until interrupted."""
    sim = simulator or TerminalSimulator(folder)
    print(f"Starting terminal simulator on {sim.folder} (poll_interval={poll_interval}s)")
    try:
        while True:
            resp = sim.process_once()
            if resp is not None:
                if resp.ok:
                    print(f"[SIM] {resp.id} -> {json.dumps(resp.result)}")
                else:
                    print(f"[SIM] {resp.id} -> error: {resp.error}")
            time.sleep(poll_interval)
    except KeyboardInterrupt:
        print("Simulator stopped by user")


__all__ = ["SimOrder", "SimAccount", "TerminalSimulator", "process_once", "watch_loop"]
