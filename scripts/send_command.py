"""
Send one command to the MT4 terminal through the file bridge and print the
result as JSON.

Run from project root:
    python scripts/send_command.py ping
    python scripts/send_command.py getBalance
    python scripts/send_command.py marketOrder --param symbol=BTCUSD --param type=buy --param lot=0.01
    python scripts/send_command.py closeMarketOrder --param ticket=77604815 --timeout 10

The folder and file names come from the environment (or `.env`):
FOLDER_PATH, COMMAND_FILE, RESPONSE_FILE.
"""
from pathlib import Path
import sys
import argparse
import asyncio
import json
import logging

# Ensure the project root is on sys.path so we can run this script directly
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from src.bridge import BridgeError, TerminalBridge, load_config
from src.bridge.command_schema import COMMAND_NAMES


def _parse_value(raw: str):
    # numbers and literals as JSON, anything else as a plain string
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def parse_params(pairs):
    params = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise ValueError(f"--param expects key=value, got {pair!r}")
        key, value = pair.split("=", 1)
        params[key.strip()] = _parse_value(value.strip())
    return params


async def run(name: str, params: dict, timeout) -> int:
    async with TerminalBridge(load_config()) as bridge:
        try:
            result = await bridge.send_command(name, params, timeout)
        except BridgeError as exc:
            print(f"{type(exc).__name__}: {exc}", file=sys.stderr)
            return 1
    print(json.dumps(result, indent=2))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Send a command to the MT4 terminal")
    parser.add_argument("command", choices=COMMAND_NAMES, help="Command name")
    parser.add_argument("--param", action="append", help="Command field as key=value (repeatable)")
    parser.add_argument("--timeout", type=float, default=None, help="Timeout in seconds (default: per command family)")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        params = parse_params(args.param)
    except ValueError as exc:
        parser.error(str(exc))
    sys.exit(asyncio.run(run(args.command, params, args.timeout)))


if __name__ == "__main__":
    main()
