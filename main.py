#!/usr/bin/env python3
"""
GasWatch - Sei Gas Price Monitor
================================

Main entry point for running GasWatch.

Usage:
    python main.py
    python main.py --log-level DEBUG    # full tracebacks and flush/backfill debug lines
    python main.py --config path/to/config.yaml

To see debug logging:
  - Run:  python main.py --log-level DEBUG
  - Or set in config:  system.log_level: "DEBUG"
  - Or set env:  export GASWATCH_LOG_LEVEL=DEBUG
"""

import argparse
import asyncio
import os
import sys


def _parse_args():
    p = argparse.ArgumentParser(description="Run GasWatch")
    p.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        metavar="LEVEL",
        help="Set log level (e.g. DEBUG for flush and backfill diagnostics). Default from config.",
    )
    p.add_argument(
        "--config",
        help="Path to config file (default: $GASWATCH_CONFIG or config/config.yaml)",
    )
    return p.parse_args()


if __name__ == "__main__":
    args = _parse_args()
    if args.log_level:
        os.environ["GASWATCH_LOG_LEVEL"] = args.log_level
    from gaswatch.core.config import ConfigurationError
    from gaswatch.core.errors import StartupFailure
    from gaswatch.orchestrator import main
    try:
        asyncio.run(main(args.config))
    except KeyboardInterrupt:
        print("\nGasWatch stopped by user")
    except (ConfigurationError, StartupFailure) as e:
        print(f"\nFatal error: {e}")
        sys.exit(1)
