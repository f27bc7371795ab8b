import asyncio
import json
from pathlib import Path

import pytest

from src.bridge.config import BridgeConfig


@pytest.fixture
def fast_config(tmp_path: Path) -> BridgeConfig:
    return BridgeConfig(
        folder=tmp_path / "MQL4" / "Files",
        submit_interval=0.05,
        collect_interval=0.01,
        default_timeout=1.0,
        order_timeout=2.0,
        post_trade_refresh_delay=None,
    )


async def wait_for_command(path: Path, timeout: float = 1.0) -> dict:
    """Wait until the bridge has written a command file and return it."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (FileNotFoundError, ValueError):
            await asyncio.sleep(0.005)
    raise AssertionError(f"no command written to {path}")
