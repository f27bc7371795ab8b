"""Exceptions raised by the terminal bridge.

Only `BridgeBusy`, `CommandTimeout` and `CommandRejected` ever reach a
caller of the bridge. `MalformedPayload` is raised by the codec and absorbed
by the poller (a half-written response file looks exactly like garbage).
"""
from __future__ import annotations

from typing import Optional


class BridgeError(Exception):
    """Base class for every bridge failure."""


class BridgeBusy(BridgeError):
    """A command is already outstanding and has not expired yet."""

    def __init__(self, pending_id: Optional[str] = None) -> None:
        self.pending_id = pending_id
        msg = "bridge busy"
        if pending_id:
            msg = f"bridge busy: command {pending_id} still awaiting a response"
        super().__init__(msg)


class CommandTimeout(BridgeError):
    """No matching response arrived within the command's timeout."""

    def __init__(self, command_id: str, timeout: float, reason: Optional[str] = None) -> None:
        self.command_id = command_id
        self.timeout = timeout
        msg = reason or f"no response for command {command_id} after {timeout:g}s"
        super().__init__(msg)


class CommandRejected(BridgeError):
    """The terminal answered with an `error` field.

    `str(exc)` is the terminal's message, unmodified.
    """

    def __init__(self, command_id: str, message: str) -> None:
        self.command_id = command_id
        self.message = message
        super().__init__(message)


class MalformedPayload(BridgeError):
    """Response bytes are empty, not JSON, or not a response object."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"malformed payload: {reason}")


__all__ = ["BridgeError", "BridgeBusy", "CommandTimeout", "CommandRejected", "MalformedPayload"]
