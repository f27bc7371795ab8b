"""Bridge configuration loaded from environment variables (and `.env`).

Durations in the environment are milliseconds, matching the terminal-side
settings; the dataclass stores seconds.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from .command_schema import COMMAND_NAMES, TRADE_COMMANDS


@dataclass
class BridgeConfig:
    folder: Path = Path("mt4_files")
    command_file: str = "command.txt"
    response_file: str = "response.txt"
    submit_interval: float = 5.0
    collect_interval: float = 0.5
    default_timeout: float = 5.0
    order_timeout: float = 30.0
    heartbeat_command: Optional[str] = None
    account_cache_ttl: float = 60.0
    file_wait: float = 5.0
    post_trade_refresh_delay: Optional[float] = 1.0

    def __post_init__(self) -> None:
        self.folder = Path(self.folder)
        self.validate()

    def validate(self) -> None:
        for name in ("submit_interval", "collect_interval", "default_timeout", "order_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"'{name}' must be > 0")
        if self.account_cache_ttl < 0:
            raise ValueError("'account_cache_ttl' must be >= 0")
        if self.file_wait < 0:
            raise ValueError("'file_wait' must be >= 0")
        if self.post_trade_refresh_delay is not None and self.post_trade_refresh_delay < 0:
            raise ValueError("'post_trade_refresh_delay' must be >= 0")
        if self.collect_interval >= self.submit_interval:
            raise ValueError("'collect_interval' must be shorter than 'submit_interval'")
        if self.heartbeat_command is not None and self.heartbeat_command not in COMMAND_NAMES:
            raise ValueError(f"unknown heartbeat command: {self.heartbeat_command!r}")
        if self.command_file == self.response_file:
            raise ValueError("command and response files must differ")

    def timeout_for(self, name: str, override: Optional[float] = None) -> float:
        if override is not None:
            return override
        if name in TRADE_COMMANDS:
            return self.order_timeout
        return self.default_timeout


def _ms(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw) / 1000.0
    except ValueError:
        raise ValueError(f"{key} must be an integer number of milliseconds, got {raw!r}")


def _optional_ms(env: Mapping[str, str], key: str, default: float) -> Optional[float]:
    # "off" (or a negative value) disables the feature.
    raw = (env.get(key) or "").strip().lower()
    if raw in ("off", "none", "disabled"):
        return None
    value = _ms(env, key, default)
    return None if value < 0 else value


def load_config(env: Optional[Mapping[str, str]] = None, dotenv: bool = True) -> BridgeConfig:
    """Build a BridgeConfig from `env` (defaults to `os.environ`)."""
    if env is None:
        if dotenv:
            load_dotenv()
        env = os.environ

    folder = env.get("FOLDER_PATH") or "mt4_files"
    return BridgeConfig(
        folder=Path(folder),
        command_file=env.get("COMMAND_FILE") or "command.txt",
        response_file=env.get("RESPONSE_FILE") or "response.txt",
        submit_interval=_ms(env, "MT4_COMMAND_INTERVAL", 5.0),
        collect_interval=_ms(env, "MT4_RESPONSE_CHECK_INTERVAL", 0.5),
        default_timeout=_ms(env, "MT4_COMMAND_TIMEOUT", 5.0),
        order_timeout=_ms(env, "MT4_ORDER_TIMEOUT", 30.0),
        heartbeat_command=env.get("MT4_HEARTBEAT_COMMAND") or None,
        account_cache_ttl=_ms(env, "MT4_ACCOUNT_CACHE_TTL", 60.0),
        file_wait=_ms(env, "MT4_FILE_WAIT", 5.0),
        post_trade_refresh_delay=_optional_ms(env, "MT4_POST_TRADE_REFRESH_DELAY", 1.0),
    )


__all__ = ["BridgeConfig", "load_config"]
