"""
Wire format for commands sent to the terminal and responses read back.

The terminal (an MQL4 expert advisor) only understands flat JSON objects,
so a command's fields sit at the top level next to `id` and `command`:

    {"id": "cmd-3f2a...", "command": "marketOrder", "symbol": "BTCUSD",
     "type": "buy", "lot": 0.01, "sl": 106000, "tp": 120000}

Responses carry the same id and either a `result` or an `error`:

    {"id": "cmd-3f2a...", "result": {"ticket": 77604815}}
    {"id": "cmd-3f2a...", "error": "Invalid ticket"}

Command fields (all optional, depending on the command):
  - symbol: str (e.g. "EURUSD")
  - type: str, order side ("buy", "sell", "buy limit", "sell limit",
    "buy stop", "sell stop")
  - lot: float (positive)
  - price: float, entry price for pending orders
  - sl / tp: float, stop-loss / take-profit price
  - ticket: int, order ticket number
  - comment: str

Fields set to None are dropped on encode; for `modifyOrder` that means
"leave unchanged".
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import json
import uuid

from .errors import MalformedPayload


COMMAND_NAMES = (
    "getBalance",
    "getAccountInfo",
    "marketOrder",
    "limitOrder",
    "closeMarketOrder",
    "closePendingOrder",
    "closeAllMarketOrders",
    "closeAllPendingOrders",
    "getAllMarketOrders",
    "getAllPendingOrders",
    "modifyOrder",
    "ping",
)

# Commands that touch the broker and may wait on a fill.
TRADE_COMMANDS = frozenset(
    {
        "marketOrder",
        "limitOrder",
        "closeMarketOrder",
        "closePendingOrder",
        "closeAllMarketOrders",
        "closeAllPendingOrders",
        "modifyOrder",
    }
)

MARKET_SIDES = ("buy", "sell")
PENDING_SIDES = ("buy limit", "sell limit", "buy stop", "sell stop")

RESERVED_KEYS = ("id", "command")


def new_command_id() -> str:
    return f"cmd-{uuid.uuid4().hex}"


@dataclass
class Command:
    name: str
    params: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_command_id)

    def to_dict(self) -> Dict[str, Any]:
        """Flatten into the object the terminal reads."""
        out: Dict[str, Any] = {"id": self.id, "command": self.name}
        for k, v in self.params.items():
            if v is not None:
                out[k] = v
        return out

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))


@dataclass
class Response:
    id: str
    result: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def validate_command_dict(d: Dict[str, Any]) -> Command:
    """Validate a flat command object and return a `Command`.

    Raises ValueError with a clear message on validation failure.
    """
    if not isinstance(d, dict):
        raise ValueError("command must be a dict")

    name = d.get("command")
    if name not in COMMAND_NAMES:
        raise ValueError(f"unknown command: {name!r}")

    id_ = d.get("id") or new_command_id()
    if not isinstance(id_, str):
        raise ValueError("'id' must be a string")

    params = {k: v for k, v in d.items() if k not in RESERVED_KEYS}

    side = params.get("type")
    if name == "marketOrder" and side not in MARKET_SIDES:
        raise ValueError(f"'type' must be one of {MARKET_SIDES} for marketOrder")
    if name == "limitOrder" and side not in PENDING_SIDES:
        raise ValueError(f"'type' must be one of {PENDING_SIDES} for limitOrder")

    if name in ("marketOrder", "limitOrder"):
        if not params.get("symbol") or not isinstance(params["symbol"], str):
            raise ValueError("'symbol' is required and must be a non-empty string")
        try:
            lot = float(params.get("lot"))
        except (TypeError, ValueError):
            raise ValueError("'lot' must be a number")
        if lot <= 0:
            raise ValueError("'lot' must be > 0")
        params["lot"] = lot

    if name == "limitOrder":
        try:
            params["price"] = float(params.get("price"))
        except (TypeError, ValueError):
            raise ValueError("'price' is required for limitOrder and must be a number")

    if name in ("closeMarketOrder", "closePendingOrder", "modifyOrder"):
        try:
            params["ticket"] = int(params.get("ticket"))
        except (TypeError, ValueError):
            raise ValueError(f"'ticket' is required for {name} and must be an integer")

    return Command(name=name, params=params, id=id_)


def encode(cmd: Command) -> bytes:
    if cmd.name not in COMMAND_NAMES:
        raise ValueError(f"unknown command: {cmd.name!r}")
    if not cmd.id or not isinstance(cmd.id, str):
        raise ValueError("command id must be a non-empty string")
    clash = [k for k in RESERVED_KEYS if k in cmd.params]
    if clash:
        raise ValueError(f"command params may not use reserved keys: {clash}")
    return cmd.to_json().encode("utf-8")


def decode(raw: bytes) -> Response:
    """Parse response bytes written by the terminal.

    Raises MalformedPayload for empty input, invalid JSON, or an object
    without a string `id`. Callers polling a file treat that as "not yet
    written" and retry.
    """
    try:
        text = raw.decode("utf-8-sig").strip()
    except UnicodeDecodeError as exc:
        raise MalformedPayload(f"not utf-8: {exc}")
    if not text:
        raise MalformedPayload("empty")

    try:
        d = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedPayload(f"invalid json: {exc}")

    if not isinstance(d, dict):
        raise MalformedPayload("response must be a JSON object")
    id_ = d.get("id")
    if not id_ or not isinstance(id_, str):
        raise MalformedPayload("response 'id' missing or not a string")

    error = d.get("error")
    result = d.get("result")
    # Some EA versions nest trade errors inside the result object.
    if error is None and isinstance(result, dict) and result.get("error"):
        error = result["error"]
    if error is not None:
        return Response(id=id_, result=None, error=str(error))
    return Response(id=id_, result=result)


def loads(s: str) -> Response:
    return decode(s.encode("utf-8"))


def dumps(resp: Response) -> str:
    """Serialize a response the way the terminal writes it."""
    d: Dict[str, Any] = {"id": resp.id}
    if resp.error is not None:
        d["error"] = resp.error
    else:
        d["result"] = resp.result
    return json.dumps(d, separators=(",", ":"))


__all__ = [
    "COMMAND_NAMES",
    "TRADE_COMMANDS",
    "MARKET_SIDES",
    "PENDING_SIDES",
    "Command",
    "Response",
    "new_command_id",
    "validate_command_dict",
    "encode",
    "decode",
    "loads",
    "dumps",
]
