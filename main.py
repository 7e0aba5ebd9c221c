"""ssh-client — entry point.

Parses arguments, prunes and opens the log file, unlocks (or creates) the
encrypted profile store and starts the console loop.
"""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
from pathlib import Path
from typing import Callable, Optional, Sequence

from ssh_client import App, __version__
from ssh_client.config import ProfileStore, get_config_dir, get_config_path, get_log_path
from ssh_client.errors import (
    CryptoError,
    MasterMismatchError,
    StoreIOError,
    ValidationError,
)
from ssh_client.ui.console import Console, prompt_master_password
from ssh_client.utils.log_file import configure_logging, prune_log_file

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ssh-client",
        description="Terminal SSH client with an encrypted connection store.",
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="directory holding config.json and the log file",
    )
    parser.add_argument("--verbose", action="store_true", help="log debug detail")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def unlock_store(
    store: ProfileStore, ask: Callable[[str], str] = getpass.getpass
) -> bool:
    """Prompt until the store is unlocked or created.

    Returns False when the store file is unusable (unreadable, corrupt).
    """
    while True:
        password, confirm = prompt_master_password(store.exists(), ask)
        try:
            if store.exists():
                store.unlock(password)
            else:
                store.initialise(password, confirm)
            return True
        except (MasterMismatchError, ValidationError) as exc:
            print(exc, file=sys.stderr)
        except (StoreIOError, CryptoError) as exc:
            logger.error("Cannot open profile store: %s", exc)
            print(f"Cannot open profile store {store.path}: {exc}", file=sys.stderr)
            return False


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Bootstrap and run ssh-client."""
    args = _parse_args(argv)
    config_dir = args.config_dir or get_config_dir()

    log_path = get_log_path(config_dir)
    prune_log_file(log_path)
    recent = configure_logging(log_path, verbose=args.verbose)
    logger.info("Starting ssh-client %s", __version__)

    store = ProfileStore(get_config_path(config_dir))
    try:
        if not unlock_store(store):
            return 1
    except (EOFError, KeyboardInterrupt):
        print(file=sys.stderr)
        return 1

    app = App(store, recent_logs=recent)
    try:
        Console(app).run()
    except KeyboardInterrupt:
        logger.info("Interrupted")
    logger.info("Exiting ssh-client")
    return 0


if __name__ == "__main__":
    sys.exit(main())
