"""
src.bridge

File-based bridge between Python and a MetaTrader 4 terminal. The EA can
only read and write plain files, so a request is a `command.txt` written by
us and its answer is a `response.txt` written by the EA, correlated by id.

- `command_schema`: wire format (Command, Response, encode/decode)
- `file_channel`: atomic command writes, response reads
- `correlator`: the single outstanding command and its deadline
- `transport`: submit/collect polling ticks
- `connector`: `TerminalBridge`, the API callers use
- `simulator`: a fake EA for development and tests
"""
from .command_schema import Command, Response
from .config import BridgeConfig, load_config
from .connector import AccountInfo, TerminalBridge
from .errors import BridgeBusy, BridgeError, CommandRejected, CommandTimeout, MalformedPayload

__all__ = [
    "AccountInfo",
    "BridgeBusy",
    "BridgeConfig",
    "BridgeError",
    "Command",
    "CommandRejected",
    "CommandTimeout",
    "MalformedPayload",
    "Response",
    "TerminalBridge",
    "load_config",
]
