"""
Background worker entry point.

Spawned by the launcher as ``python -m mount_backup.worker --config PATH``
with its standard streams detached from the terminal.
"""

import argparse
import sys
from typing import List, Optional

from .config import load_config
from .errors import ConfigError
from .logging_utils import setup_logging
from .runner import BackupRunner


def main(argv: Optional[List[str]] = None) -> int:
    """Run one backup and return its exit code."""
    parser = argparse.ArgumentParser(
        prog="mount_backup.worker",
        description="Run one backup in the current process (spawned by 'start')",
    )
    parser.add_argument("--config", required=True, help="Path to the YAML configuration")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"❌ CONFIG ERROR: {e}", file=sys.stderr)
        return e.exit_code

    logger = setup_logging(config, console_level=None)

    try:
        exit_code = BackupRunner(config).run()
    except Exception as e:
        logger.critical(f"Unexpected error in backup worker: {e}", exc_info=True)
        return 1

    logger.info(f"Backup worker finished with exit code {exit_code}")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
