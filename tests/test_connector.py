"""End-to-end tests for TerminalBridge against a hand-driven terminal."""
import asyncio
import json
import time

import pytest

from src.bridge.config import BridgeConfig
from src.bridge.connector import AccountInfo, TerminalBridge
from src.bridge.correlator import CommandCorrelator
from src.bridge.errors import BridgeBusy, CommandRejected, CommandTimeout

from conftest import wait_for_command


def _respond(bridge: TerminalBridge, payload: dict) -> None:
    bridge.channel.command_path.unlink(missing_ok=True)
    bridge.channel.response_path.write_text(json.dumps(payload), encoding="utf-8")


async def _answer_next(bridge: TerminalBridge, **fields) -> dict:
    cmd = await wait_for_command(bridge.channel.command_path)
    _respond(bridge, {"id": cmd["id"], **fields})
    return cmd


def test_get_balance_resolves(fast_config: BridgeConfig):
    async def main():
        async with TerminalBridge(fast_config) as bridge:
            task = asyncio.create_task(bridge.get_balance())
            cmd = await _answer_next(bridge, result=10532.40)
            assert cmd["command"] == "getBalance"
            return await task

    assert asyncio.run(main()) == 10532.40


def test_busy_then_admitted_after_resolution(fast_config: BridgeConfig):
    async def main():
        async with TerminalBridge(fast_config) as bridge:
            a = asyncio.create_task(bridge.send_command("ping"))
            cmd = await wait_for_command(bridge.channel.command_path)
            assert bridge.get_current_pending_command().id == cmd["id"]

            with pytest.raises(BridgeBusy):
                await bridge.send_command("getBalance")

            _respond(bridge, {"id": cmd["id"], "result": "ok"})
            assert await a == "ok"

            c = asyncio.create_task(bridge.send_command("getBalance"))
            await _answer_next(bridge, result=1.0)
            assert await c == 1.0

    asyncio.run(main())


def test_only_first_of_many_concurrent_calls_is_admitted(fast_config: BridgeConfig):
    async def main():
        async with TerminalBridge(fast_config) as bridge:
            first = asyncio.create_task(bridge.send_command("ping"))
            others = [asyncio.create_task(bridge.send_command("getBalance")) for _ in range(5)]
            results = await asyncio.gather(*others, return_exceptions=True)
            assert all(isinstance(r, BridgeBusy) for r in results)
            await _answer_next(bridge, result="pong")
            assert await first == "pong"

    asyncio.run(main())


def test_timeout_frees_slot_and_clears_command_file(fast_config: BridgeConfig):
    async def main():
        async with TerminalBridge(fast_config) as bridge:
            started = time.monotonic()
            with pytest.raises(CommandTimeout):
                await bridge.close_order(77604815, timeout=0.2)
            assert time.monotonic() - started >= 0.19
            assert not bridge.channel.command_pending()
            assert bridge.get_current_pending_command() is None

            task = asyncio.create_task(bridge.ping())
            await _answer_next(bridge, result="pong")
            assert await task == "pong"

    asyncio.run(main())


def test_late_response_for_timed_out_command_is_ignored(fast_config: BridgeConfig):
    async def main():
        async with TerminalBridge(fast_config) as bridge:
            with pytest.raises(CommandTimeout):
                await bridge.send_command("ping", timeout=0.05)

            task = asyncio.create_task(bridge.get_balance())
            cmd = await wait_for_command(bridge.channel.command_path)
            # late answer for a previous command id
            _respond(bridge, {"id": "cmd-late", "result": "pong"})
            await asyncio.sleep(0.05)
            assert not task.done()
            _respond(bridge, {"id": cmd["id"], "result": 42.0})
            return await task

    assert asyncio.run(main()) == 42.0


def test_terminal_error_becomes_command_rejected(fast_config: BridgeConfig):
    async def main():
        async with TerminalBridge(fast_config) as bridge:
            task = asyncio.create_task(bridge.close_order(1))
            await _answer_next(bridge, error="Invalid ticket")
            with pytest.raises(CommandRejected) as e:
                await task
            assert str(e.value) == "Invalid ticket"
            assert bridge.get_current_pending_command() is None

    asyncio.run(main())


def test_start_removes_stale_files(fast_config: BridgeConfig):
    fast_config.folder.mkdir(parents=True)
    (fast_config.folder / "command.txt").write_text('{"id":"old","command":"ping"}', encoding="utf-8")
    (fast_config.folder / "response.txt").write_text('{"id":"old","result":"pong"}', encoding="utf-8")

    async def main():
        async with TerminalBridge(fast_config) as bridge:
            assert not bridge.channel.command_pending()
            assert bridge.channel.try_read_response() is None

    asyncio.run(main())


def test_order_family_timeout_and_params(fast_config: BridgeConfig):
    async def main():
        async with TerminalBridge(fast_config) as bridge:
            task = asyncio.create_task(
                bridge.place_market_order("BTCUSD", "BUY", 0.01, stop_loss=106000, take_profit=120000, comment="test")
            )
            cmd = await wait_for_command(bridge.channel.command_path)
            assert bridge.correlator.pending.timeout == fast_config.order_timeout
            assert cmd == {
                "id": cmd["id"],
                "command": "marketOrder",
                "symbol": "BTCUSD",
                "type": "buy",
                "lot": 0.01,
                "sl": 106000,
                "tp": 120000,
                "comment": "test",
            }
            _respond(bridge, {"id": cmd["id"], "result": {"ticket": 77604815}})
            return await task

    assert asyncio.run(main()) == {"ticket": 77604815}


def test_limit_and_modify_shapes(fast_config: BridgeConfig):
    async def main():
        async with TerminalBridge(fast_config) as bridge:
            task = asyncio.create_task(bridge.place_limit_order("BTCUSD", "sell", 0.02, price=109000))
            cmd = await _answer_next(bridge, result={"ticket": 5})
            await task
            assert cmd["type"] == "sell limit"
            assert cmd["price"] == 109000
            assert "sl" not in cmd

            task = asyncio.create_task(bridge.modify_order(5, stop_loss=106500))
            cmd = await _answer_next(bridge, result={"ticket": 5})
            await task
            assert cmd["command"] == "modifyOrder"
            assert cmd["ticket"] == 5
            assert cmd["sl"] == 106500
            assert "tp" not in cmd

    asyncio.run(main())


def test_invalid_order_params_raise_before_sending(fast_config: BridgeConfig):
    async def main():
        async with TerminalBridge(fast_config) as bridge:
            with pytest.raises(ValueError):
                await bridge.place_market_order("BTCUSD", "long", 0.01)
            assert not bridge.channel.command_pending()
            assert bridge.correlator.is_idle()

    asyncio.run(main())


def test_order_lists_accept_both_shapes(fast_config: BridgeConfig):
    async def main():
        async with TerminalBridge(fast_config) as bridge:
            task = asyncio.create_task(bridge.get_open_orders())
            await _answer_next(bridge, result={"orders": [{"ticket": 1}]})
            assert await task == [{"ticket": 1}]

            task = asyncio.create_task(bridge.get_pending_orders())
            await _answer_next(bridge, result=[{"ticket": 2}])
            assert await task == [{"ticket": 2}]

    asyncio.run(main())


def test_account_info_cache(fast_config: BridgeConfig):
    fast_config.account_cache_ttl = 60.0

    async def main():
        async with TerminalBridge(fast_config) as bridge:
            task = asyncio.create_task(bridge.refresh_account_info())
            await _answer_next(
                bridge,
                result={"balance": 1000, "equity": 990, "free_margin": 900, "leverage": 100, "account_number": 42},
            )
            info = await task
            assert isinstance(info, AccountInfo)
            assert info.free_margin == 900.0
            assert info.account_number == "42"

            # served from cache, no command written
            assert await bridge.refresh_account_info() is info
            assert not bridge.channel.command_pending()

            # refresh fails -> stale copy
            task = asyncio.create_task(bridge.refresh_account_info(force=True))
            await _answer_next(bridge, error="terminal busy")
            assert await task is info

    asyncio.run(main())


def test_check_connection(fast_config: BridgeConfig):
    async def main():
        async with TerminalBridge(fast_config) as bridge:
            task = asyncio.create_task(bridge.check_connection())
            await _answer_next(bridge, result="pong")
            assert await task is True
            assert bridge.connected

            fast_config.default_timeout = 0.05
            assert await bridge.check_connection() is False
            assert not bridge.connected

    asyncio.run(main())


def test_enqueue_waits_instead_of_busy(fast_config: BridgeConfig):
    async def main():
        async with TerminalBridge(fast_config) as bridge:
            first = asyncio.create_task(bridge.send_command("ping"))
            queued = asyncio.create_task(bridge.enqueue_command("getBalance"))
            cmd = await _answer_next(bridge, result="pong")
            assert cmd["command"] == "ping"
            assert await first == "pong"

            cmd = await _answer_next(bridge, result=7.5)
            assert cmd["command"] == "getBalance"
            return await queued

    assert asyncio.run(main()) == 7.5


def test_clear_pending_command(fast_config: BridgeConfig):
    async def main():
        async with TerminalBridge(fast_config) as bridge:
            task = asyncio.create_task(bridge.send_command("getBalance"))
            cmd = await wait_for_command(bridge.channel.command_path)
            cleared = bridge.clear_pending_command()
            assert cleared.id == cmd["id"]
            assert not bridge.channel.command_pending()
            with pytest.raises(CommandTimeout):
                await task
            assert bridge.clear_pending_command() is None
            status = bridge.status()
            assert status["state"] == "IDLE"
            assert status["running"] is True

    asyncio.run(main())


def test_stop_leaves_in_flight_call_to_its_timeout(fast_config: BridgeConfig):
    async def main():
        bridge = TerminalBridge(fast_config)
        await bridge.start()
        task = asyncio.create_task(bridge.send_command("ping", timeout=0.1))
        await wait_for_command(bridge.channel.command_path)
        await bridge.stop()
        assert not bridge.running
        assert not task.done()
        with pytest.raises(CommandTimeout):
            await task

    asyncio.run(main())


def test_send_command_waits_for_terminal_to_consume_command_file(fast_config: BridgeConfig):
    async def main():
        async with TerminalBridge(fast_config) as bridge:
            bridge.channel.command_path.write_text('{"id": "foreign", "command": "ping"}', encoding="utf-8")
            task = asyncio.create_task(bridge.send_command("getBalance"))
            await asyncio.sleep(0.05)
            assert not task.done()
            assert bridge.channel.read_command_id() == "foreign"
            assert bridge.get_current_pending_command() is None

            bridge.channel.command_path.unlink()  # terminal picked it up
            cmd = await _answer_next(bridge, result=250.0)
            assert cmd["command"] == "getBalance"
            return await task

    assert asyncio.run(main()) == 250.0


def test_send_command_busy_when_command_file_never_consumed(fast_config: BridgeConfig):
    fast_config.file_wait = 0.05

    async def main():
        async with TerminalBridge(fast_config) as bridge:
            bridge.channel.command_path.write_text('{"id": "foreign", "command": "ping"}', encoding="utf-8")
            with pytest.raises(BridgeBusy) as e:
                await bridge.place_market_order("BTCUSD", "buy", 0.01)
            assert e.value.pending_id == "foreign"
            assert bridge.channel.read_command_id() == "foreign"
            assert bridge.get_current_pending_command() is None

    asyncio.run(main())


def test_account_stats(fast_config: BridgeConfig):
    async def main():
        async with TerminalBridge(fast_config) as bridge:
            task = asyncio.create_task(bridge.get_account_stats())
            cmd = await _answer_next(
                bridge,
                result={"balance": 1000, "equity": 900, "margin": 90, "freeMargin": 810, "marginLevel": 1000},
            )
            assert cmd["command"] == "getAccountInfo"
            cmd = await _answer_next(
                bridge,
                result=[
                    {"ticket": 1, "symbol": "EURUSD", "lot": 0.1},
                    {"ticket": 2, "symbol": "BTCUSD", "lot": 0.25},
                    {"ticket": 3, "symbol": "EURUSD", "lot": 0.05},
                ],
            )
            assert cmd["command"] == "getAllMarketOrders"
            return await task

    stats = asyncio.run(main())
    assert stats["account"]["balance"] == 1000.0
    assert stats["positions"] == {"count": 3, "total_lots": 0.4, "symbols": ["BTCUSD", "EURUSD"]}
    assert stats["margins"] == {"used": 90.0, "free": 810.0, "level": 1000.0, "usage_percent": 10.0}
    assert stats["risk"] == {"drawdown": 10.0, "equity_percent": 90.0}


def test_account_stats_with_empty_account(fast_config: BridgeConfig):
    async def main():
        async with TerminalBridge(fast_config) as bridge:
            task = asyncio.create_task(bridge.get_account_stats())
            await _answer_next(bridge, result={"balance": 0, "equity": 0})
            await _answer_next(bridge, result={"orders": []})
            return await task

    stats = asyncio.run(main())
    assert stats["positions"] == {"count": 0, "total_lots": 0.0, "symbols": []}
    assert stats["margins"]["usage_percent"] == 0.0
    assert stats["risk"] == {"drawdown": 0.0, "equity_percent": 100.0}


def test_market_order_refreshes_account_afterwards(fast_config: BridgeConfig):
    fast_config.post_trade_refresh_delay = 0.01

    async def main():
        async with TerminalBridge(fast_config) as bridge:
            task = asyncio.create_task(bridge.place_market_order("BTCUSD", "buy", 0.01))
            await _answer_next(bridge, result={"ticket": 5})
            assert await task == {"ticket": 5}
            assert bridge._account is None

            cmd = await _answer_next(bridge, result={"balance": 512.5, "equity": 510})
            assert cmd["command"] == "getAccountInfo"
            for _ in range(100):
                if bridge._account is not None and not bridge._refresh_tasks:
                    break
                await asyncio.sleep(0.01)
            assert bridge._account.balance == 512.5
            assert not bridge._refresh_tasks

    asyncio.run(main())


def test_stop_cancels_scheduled_account_refresh(fast_config: BridgeConfig):
    fast_config.post_trade_refresh_delay = 10.0

    async def main():
        bridge = TerminalBridge(fast_config)
        await bridge.start()
        task = asyncio.create_task(bridge.close_order(5))
        await _answer_next(bridge, result={"closed": True})
        await task
        assert len(bridge._refresh_tasks) == 1
        await bridge.stop()
        assert not bridge._refresh_tasks
        assert not bridge.channel.command_pending()

    asyncio.run(main())


class _Clock:
    def __init__(self) -> None:
        self.now = 500.0

    def __call__(self) -> float:
        return self.now


def test_status_pending_age_uses_correlator_clock(fast_config: BridgeConfig):
    clock = _Clock()

    async def main():
        async with TerminalBridge(fast_config, correlator=CommandCorrelator(clock=clock)) as bridge:
            task = asyncio.create_task(bridge.send_command("ping"))
            await wait_for_command(bridge.channel.command_path)
            clock.now += 0.25
            status = bridge.status()
            assert status["state"] == "AWAITING_RESPONSE"
            assert status["pending_age"] == 0.25
            await _answer_next(bridge, result="pong")
            await task

    asyncio.run(main())
