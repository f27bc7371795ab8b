"""Single-slot command correlator.

Holds at most one outstanding command and settles its future when a
response with the same id shows up, when the deadline passes, or when the
slot is cleared by hand.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .command_schema import Command, Response
from .errors import BridgeBusy, CommandRejected, CommandTimeout


logger = logging.getLogger(__name__)


class CorrelatorState(str, enum.Enum):
    IDLE = "IDLE"
    AWAITING_RESPONSE = "AWAITING_RESPONSE"


@dataclass
class PendingSlot:
    command: Command
    submitted_at: float
    timeout: float
    future: "asyncio.Future[Any]"
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    @property
    def deadline(self) -> float:
        return self.submitted_at + self.timeout

    def expired(self, now: float) -> bool:
        return now >= self.deadline


class CommandCorrelator:
    """Enforces one outstanding command and matches responses by id."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._slot: Optional[PendingSlot] = None
        # Called with the expired Command after a timeout frees the slot.
        self.on_expired: Optional[Callable[[Command], None]] = None

    def now(self) -> float:
        """Current reading of the clock slots are stamped with."""
        return self._clock()

    @property
    def pending(self) -> Optional[PendingSlot]:
        return self._slot

    @property
    def state(self) -> CorrelatorState:
        if self._slot is None:
            return CorrelatorState.IDLE
        return CorrelatorState.AWAITING_RESPONSE

    def is_idle(self) -> bool:
        """True when a new command would be admitted right now."""
        self.expire()
        return self._slot is None

    def admit(
        self,
        command: Command,
        timeout: float,
        future: "Optional[asyncio.Future[Any]]" = None,
    ) -> PendingSlot:
        """Occupy the slot with `command` or raise BridgeBusy.

        An occupied slot whose deadline has passed is expired first, so a
        lost response never wedges the bridge. Must be called from the
        event loop that will await the returned slot's future.
        """
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        self.expire()
        if self._slot is not None:
            raise BridgeBusy(self._slot.command.id)

        loop = asyncio.get_running_loop()
        slot = PendingSlot(
            command=command,
            submitted_at=self._clock(),
            timeout=timeout,
            future=future if future is not None else loop.create_future(),
        )
        slot.timer = loop.call_later(timeout, self._on_deadline, command.id)
        self._slot = slot
        logger.debug("Admitted %s (%s), timeout=%.1fs", command.id, command.name, timeout)
        return slot

    def resolve(self, response: Response) -> bool:
        """Settle the pending command if `response` answers it.

        Returns False (and leaves the slot untouched) when nothing is pending
        or the ids differ: a late answer to an expired command must never
        settle a newer one.
        """
        slot = self._slot
        if slot is None:
            logger.warning("Discarding stale response %s: no command pending", response.id)
            return False
        if response.id != slot.command.id:
            logger.warning(
                "Discarding stale response %s: pending command is %s",
                response.id,
                slot.command.id,
            )
            return False

        self._release(slot)
        if response.error is not None:
            logger.info("Command %s rejected by terminal: %s", slot.command.id, response.error)
            _settle(slot.future, exc=CommandRejected(slot.command.id, response.error))
        else:
            logger.info("Command %s (%s) answered", slot.command.id, slot.command.name)
            _settle(slot.future, result=response.result)
        return True

    def matches(self, response: Response) -> bool:
        return self._slot is not None and self._slot.command.id == response.id

    def expire(self, now: Optional[float] = None) -> bool:
        """Time out the pending command if its deadline has passed."""
        slot = self._slot
        if slot is None:
            return False
        now = self._clock() if now is None else now
        if not slot.expired(now):
            return False
        self._timeout(slot)
        return True

    def clear(self) -> Optional[Command]:
        """Drop the pending command without waiting for its deadline."""
        slot = self._slot
        if slot is None:
            return None
        self._release(slot)
        logger.warning("Pending command %s cleared before a response arrived", slot.command.id)
        _settle(
            slot.future,
            exc=CommandTimeout(slot.command.id, slot.timeout, reason=f"command {slot.command.id} cleared before a response arrived"),
        )
        return slot.command

    def abandon(self, command_id: str) -> None:
        """Free the slot for a command that never made it to disk."""
        slot = self._slot
        if slot is None or slot.command.id != command_id:
            return
        self._release(slot)
        slot.future.cancel()

    def _on_deadline(self, command_id: str) -> None:
        slot = self._slot
        if slot is not None and slot.command.id == command_id:
            self._timeout(slot)

    def _timeout(self, slot: PendingSlot) -> None:
        self._release(slot)
        logger.warning("Command %s (%s) timed out after %.1fs", slot.command.id, slot.command.name, slot.timeout)
        _settle(slot.future, exc=CommandTimeout(slot.command.id, slot.timeout))
        if self.on_expired is not None:
            try:
                self.on_expired(slot.command)
            except Exception:
                logger.exception("on_expired hook failed for %s", slot.command.id)

    def _release(self, slot: PendingSlot) -> None:
        if slot.timer is not None:
            slot.timer.cancel()
        self._slot = None


def _settle(fut: "asyncio.Future[Any]", result: Any = None, exc: Optional[BaseException] = None) -> None:
    # The waiter may have been cancelled already.
    if fut.done():
        return
    if exc is not None:
        fut.set_exception(exc)
    else:
        fut.set_result(result)


__all__ = ["CorrelatorState", "PendingSlot", "CommandCorrelator"]
