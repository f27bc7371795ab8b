"""
Run the MT4 terminal simulator: answer command files like the EA would.

Usage:
  python scripts/run_simulator.py --folder mt4_files --once
  python scripts/run_simulator.py --folder mt4_files --poll 0.5
"""
from pathlib import Path
import sys
import argparse
import logging

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from src.bridge.config import load_config
from src.bridge.simulator import TerminalSimulator, SimAccount, watch_loop


def main() -> None:
    config = load_config()
    parser = argparse.ArgumentParser()
    parser.add_argument("--folder", type=str, default=str(config.folder), help="Terminal files folder (default: FOLDER_PATH)")
    parser.add_argument("--once", action="store_true", help="Answer at most one command and exit")
    parser.add_argument("--poll", type=float, default=0.5, help="Poll interval in seconds for watch loop")
    parser.add_argument("--balance", type=float, default=10000.0, help="Starting balance of the fake account")
    parser.add_argument("--verbose", action="store_true", help="Log every simulated command")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    sim = TerminalSimulator(
        Path(args.folder),
        command_file=config.command_file,
        response_file=config.response_file,
        account=SimAccount(balance=args.balance),
    )
    if args.once:
        resp = sim.process_once()
        print(resp if resp is not None else "no command waiting")
    else:
        watch_loop(sim.folder, poll_interval=args.poll, simulator=sim)


if __name__ == "__main__":
    main()
