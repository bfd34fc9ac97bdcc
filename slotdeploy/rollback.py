#!/usr/bin/env python3
"""
Emergency Rollback Script

Swaps traffic back to the idle slot, starting it from the release its alias
points at if it is not running. Use this when a promoted release misbehaves
after the orchestrator has already finished.

Usage:
    python -m slotdeploy.rollback
    python -m slotdeploy.rollback --to a
    python -m slotdeploy.rollback --to b
"""

import argparse
import sys

from slotdeploy.config import load_settings
from slotdeploy.errors import ConfigError, DeploymentError
from slotdeploy.logging_config import setup_logging
from slotdeploy.orchestrator import Orchestrator, parse_slot


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Emergency Rollback")
    parser.add_argument(
        "--to",
        type=parse_slot,
        help="Rollback to specific slot (default: the slot that is not live)",
    )
    parser.add_argument("--env-file", default=".env", help="Settings file (default: .env)")
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.env_file)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        return 1

    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    orchestrator = Orchestrator(settings)

    try:
        orchestrator.rollback(args.to)
    except DeploymentError as e:
        print(f"\nFAILED: {e}", file=sys.stderr)
        print("Manual fix:", file=sys.stderr)
        print("  1. Start the slot you want live and check it answers on its port", file=sys.stderr)
        print(f"  2. Point {settings.NGINX_CONFIG_PATH} upstream at that port", file=sys.stderr)
        print(f"  3. {settings.NGINX_TEST_COMMAND} && {settings.NGINX_RELOAD_COMMAND}", file=sys.stderr)
        print(f"  4. ln -sfn {settings.slots_dir}/<slot> {settings.live_pointer_path}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
