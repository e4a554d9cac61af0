"""Companion process that watches the application which started it."""

from __future__ import annotations

import os
import sys
import time
from pathlib import Path

from .watchdog import (
    BOLD_GREEN,
    CONFIG_ENV,
    RED,
    RESET,
    SharedConfig,
    WatchdogError,
    start,
)


def read_shared_config(path) -> SharedConfig:
    """Read the settings the watched application published at path."""
    return SharedConfig.from_bytes(Path(path).read_bytes())


def main(argv=None) -> int:
    """Watch the partner until told to stop; return the exit code."""
    argv = list(sys.argv if argv is None else argv)
    path = os.environ.get(CONFIG_ENV)
    if not path:
        print(f"{RED}no shared config: {CONFIG_ENV} is not set{RESET}", file=sys.stderr)
        return 1
    try:
        config = read_shared_config(path)
    except (OSError, ValueError) as exc:
        print(f"{RED}cannot read shared config: {exc}{RESET}", file=sys.stderr)
        return 1
    try:
        dog = start(config.interval, config.threshold, argv)
    except WatchdogError as exc:
        print(f"{RED}watchdog failed to start: {exc}{RESET}", file=sys.stderr)
        return 1

    print(f"{BOLD_GREEN}App is being Watched from WD{RESET}", flush=True)
    while dog.running:
        time.sleep(1)
    return 0


if __name__ == "__main__":
    sys.exit(main())