"""
Polling transport: two periodic ticks on the asyncio loop.

- submit tick (every `submit_interval`): when the correlator is idle, send
  the next queued command, or a heartbeat in keep-alive mode.
- collect tick (every `collect_interval`): look for the response file and
  hand what it finds to the correlator.

Neither tick blocks; a tick that raises is logged and the loop carries on.
"""
from __future__ import annotations

import asyncio
import collections
import logging
from dataclasses import dataclass
from typing import Any, Callable, Deque, List, Optional

from . import command_schema
from .command_schema import Command
from .correlator import CommandCorrelator, PendingSlot
from .errors import BridgeBusy, BridgeError, CommandTimeout
from .file_channel import FileChannel


logger = logging.getLogger(__name__)


@dataclass
class _Queued:
    command: Command
    timeout: float
    future: "asyncio.Future[Any]"


class FilePoller:
    def __init__(
        self,
        channel: FileChannel,
        correlator: CommandCorrelator,
        *,
        submit_interval: float = 5.0,
        collect_interval: float = 0.5,
        heartbeat_command: Optional[str] = None,
        heartbeat_timeout: float = 5.0,
        on_heartbeat: Optional[Callable[[bool, Any], None]] = None,
    ) -> None:
        self.channel = channel
        self.correlator = correlator
        self.submit_interval = submit_interval
        self.collect_interval = collect_interval
        self.heartbeat_command = heartbeat_command
        self.heartbeat_timeout = heartbeat_timeout
        self.on_heartbeat = on_heartbeat

        self._queue: Deque[_Queued] = collections.deque()
        self._tasks: List["asyncio.Task[None]"] = []
        self._stale_id: Optional[str] = None
        self.correlator.on_expired = self._on_expired

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._run("submit", self.submit_interval, self.submit_tick)),
            asyncio.create_task(self._run("collect", self.collect_interval, self.collect_tick)),
        ]
        logger.info(
            "Poller started (submit every %.2fs, collect every %.2fs, heartbeat=%s)",
            self.submit_interval,
            self.collect_interval,
            self.heartbeat_command or "off",
        )

    async def stop(self) -> None:
        """Cancel both ticks. The in-flight command keeps its own deadline."""
        tasks, self._tasks = self._tasks, []
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        while self._queue:
            item = self._queue.popleft()
            if not item.future.done():
                item.future.set_exception(
                    CommandTimeout(item.command.id, item.timeout, reason=f"bridge stopped before command {item.command.id} was sent")
                )
        logger.info("Poller stopped")

    def dispatch(self, command: Command, timeout: float, future: "Optional[asyncio.Future[Any]]" = None) -> PendingSlot:
        """Admit `command` and write it to the command file.

        Raises BridgeBusy when a command is outstanding or the terminal has
        not consumed the previous command file yet, ValueError when the
        command does not encode, OSError when the write fails (the slot is
        freed again in that case).
        """
        data = command_schema.encode(command)
        if not self.correlator.is_idle():
            raise BridgeBusy(self.correlator.pending.command.id)
        if self.channel.command_pending():
            raise BridgeBusy(self.channel.read_command_id())
        slot = self.correlator.admit(command, timeout, future=future)
        try:
            self.channel.write_command_file(data)
        except OSError:
            self.correlator.abandon(command.id)
            raise
        logger.info("Command sent: %s (%s)", command.name, command.id)
        return slot

    async def wait_for_command_file(self, max_wait: float) -> bool:
        """Wait up to `max_wait` seconds for the terminal to consume the command file."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max_wait
        while self.channel.command_pending():
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(min(self.collect_interval, 0.05))
        return True

    def enqueue(self, command: Command, timeout: float) -> "asyncio.Future[Any]":
        """Queue `command` for the submit tick; returns the future to await."""
        command_schema.encode(command)
        fut = asyncio.get_running_loop().create_future()
        self._queue.append(_Queued(command, timeout, fut))
        logger.debug("Queued %s (%s), depth=%d", command.name, command.id, len(self._queue))
        return fut

    def submit_tick(self) -> None:
        if not self.correlator.is_idle():
            return
        if self.channel.command_pending():
            logger.debug("Command file not consumed yet; holding submission")
            return

        while self._queue:
            item = self._queue.popleft()
            if item.future.done():
                continue
            try:
                self.dispatch(item.command, item.timeout, future=item.future)
            except (BridgeError, OSError, ValueError) as exc:
                logger.error("Could not send queued command %s: %s", item.command.id, exc)
                if not item.future.done():
                    item.future.set_exception(exc)
                continue
            return

        if self.heartbeat_command:
            self._send_heartbeat()

    def collect_tick(self) -> None:
        self.correlator.expire()
        resp = self.channel.try_read_and_consume_response(self.correlator.matches)
        if resp is None:
            if not self.channel.response_path.exists():
                self._stale_id = None
            return
        if self.correlator.matches(resp):
            self.correlator.resolve(resp)
            self._stale_id = None
            return
        # Not ours; leave the file and only log each stale id once.
        if resp.id != self._stale_id:
            self._stale_id = resp.id
            pending = self.correlator.pending
            logger.warning(
                "Discarding stale response %s: pending command is %s",
                resp.id,
                pending.command.id if pending else None,
            )

    def _send_heartbeat(self) -> None:
        cmd = Command(name=self.heartbeat_command)
        try:
            slot = self.dispatch(cmd, self.heartbeat_timeout)
        except OSError as exc:
            logger.warning("Heartbeat write failed: %s", exc)
            return
        slot.future.add_done_callback(self._heartbeat_done)

    def _heartbeat_done(self, fut: "asyncio.Future[Any]") -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            logger.warning("Heartbeat failed: %s", exc)
            ok, value = False, exc
        else:
            ok, value = True, fut.result()
        if self.on_heartbeat is not None:
            self.on_heartbeat(ok, value)

    def _on_expired(self, command: Command) -> None:
        self.channel.discard_command(command.id)

    async def _run(self, name: str, interval: float, tick: Callable[[], None]) -> None:
        while True:
            try:
                tick()
            except Exception:
                logger.exception("%s tick failed", name)
            await asyncio.sleep(interval)


__all__ = ["FilePoller"]
