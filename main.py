#!/usr/bin/env python3
"""
local-mount-backup: rsync backup onto a removable drive, run in the background.

Main entry point for the backup application.
"""

import argparse
import logging
import sys
from typing import List, Optional

from mount_backup.config import BackupJobConfig, load_config
from mount_backup.errors import (
    BackupError,
    ConfigError,
    LockConflictError,
    MountError,
)
from mount_backup.launcher import Launcher, require_root
from mount_backup.ledger import StatusLedger
from mount_backup.lock import JobIdentity, LockState, RunLock
from mount_backup.logging_utils import setup_logging
from mount_backup.schedule_checker import ScheduleChecker
from mount_backup.services import MountService, SystemMountService

PROG = "local-mount-backup"


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Mount the backup drive and copy the configured directories into it with rsync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  start    Starts the backup process in the background (requires sudo).
  status   Shows the current status of the backup process.
  history  Lists the most recent backup runs.
  finish   Safely unmounts the backup drive if no backup is running (requires sudo).
  help     Displays this help message.

Examples:
  sudo local-mount-backup start
  sudo local-mount-backup start --foreground --if-scheduled   # from cron
  local-mount-backup --config /srv/backup/config.yaml status
        """,
    )
    parser.add_argument(
        "--config",
        "-c",
        default="config.yaml",
        help="Path to the YAML configuration file (default: config.yaml)",
    )

    subparsers = parser.add_subparsers(dest="command", metavar="{start,status,history,finish,help}")

    start = subparsers.add_parser("start", help="Start the backup in the background")
    start.add_argument(
        "--foreground",
        action="store_true",
        help="Run the backup in this process instead of detaching",
    )
    start.add_argument(
        "--if-scheduled",
        action="store_true",
        help="Only run if the configured schedule fired today",
    )

    subparsers.add_parser("status", help="Show the current backup status")

    history = subparsers.add_parser("history", help="List recent backup runs")
    history.add_argument(
        "--limit", "-n", type=int, default=10, help="Number of runs to show (default: 10)"
    )

    subparsers.add_parser("finish", help="Unmount the backup drive if no backup is running")
    subparsers.add_parser("help", help="Show this help message")

    return parser


def run_start(config: BackupJobConfig, args: argparse.Namespace, logger: logging.Logger) -> int:
    """Launch the backup, or run it in place with --foreground."""
    if args.if_scheduled and not ScheduleChecker.should_run_backup(config):
        logger.info("No backup scheduled to run today")
        return 0

    launcher = Launcher(config, args.config)

    if args.foreground:
        logger.info(f"Starting backup of '{config.device_name}' in the foreground")
        return launcher.run_foreground()

    pid = launcher.launch()
    print(f"Backup job submitted (PID {pid}). It will run detached from this terminal.")
    print(f"You can monitor progress in the log files at: {config.log_path}")
    print(f"Check status with: {PROG} status")
    return 0


def run_status(config: BackupJobConfig) -> int:
    """Print the status report."""
    print(StatusLedger(config).current_status().render())
    return 0


def run_history(config: BackupJobConfig, limit: int) -> int:
    """Print the most recent runs, newest first."""
    entries = StatusLedger(config).history(limit)
    if not entries:
        print("Never ran (no log files found).")
        return 0

    for entry in entries:
        print(entry.describe())
    return 0


def run_finish(
    config: BackupJobConfig,
    logger: logging.Logger,
    mount_service: Optional[MountService] = None,
) -> int:
    """Unmount the backup drive unless a backup is running."""
    require_root("finish")
    mount_service = mount_service or SystemMountService()
    mount_point = config.mount_point

    print(f"Attempting to safely unmount the backup drive at '{mount_point}'...")

    lock_status = RunLock(config.lock_file).inspect(JobIdentity.for_config(config))
    if lock_status.state == LockState.RUNNING:
        raise LockConflictError(
            lock_status.pid,
            f"Cannot unmount. The backup is currently running with PID: {lock_status.pid}.",
        )

    if not mount_service.is_mounted(mount_point):
        print(f"INFO: Drive at '{mount_point}' is already unmounted. Nothing to do.")
        return 0

    print("INFO: Backup is not running. Proceeding with unmount...")
    success, error_message = mount_service.unmount(mount_point)
    if not success:
        raise MountError(
            f"'umount' command failed: {error_message}. The drive might be in use by another process.\n"
            f"Tip: You can try to find the blocking process with: lsof +f -- '{mount_point}'"
        )

    logger.info(f"Drive at '{mount_point}' unmounted")
    print(f"✅ SUCCESS: Drive at '{mount_point}' has been unmounted successfully.")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main application entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help(sys.stderr)
        return 1
    if args.command == "help":
        parser.print_help()
        return 0

    logger = None
    try:
        # Load configuration before touching the lock, the mount or the logs
        config = load_config(args.config)

        if args.command in ("status", "history"):
            logger = setup_logging(config, console_level=logging.WARNING, log_to_file=False)
        else:
            logger = setup_logging(config)

        if args.command == "start":
            return run_start(config, args, logger)
        if args.command == "status":
            return run_status(config)
        if args.command == "history":
            return run_history(config, args.limit)
        if args.command == "finish":
            return run_finish(config, logger)

        parser.print_help(sys.stderr)
        return 1

    except ConfigError as e:
        print(f"❌ CONFIG ERROR: {e}", file=sys.stderr)
        print(
            "FATAL: Configuration validation failed. Please correct your config file. Aborting.",
            file=sys.stderr,
        )
        return e.exit_code

    except BackupError as e:
        print(f"❌ ERROR: {e}", file=sys.stderr)
        if logger:
            logger.error(str(e))
        return e.exit_code

    except KeyboardInterrupt:
        print("\nINTERRUPTED: Backup command interrupted by user", file=sys.stderr)
        return 130

    except Exception as e:
        error_msg = f"Unexpected error: {e}"
        print(f"ERROR: {error_msg}", file=sys.stderr)
        if logger:
            logger.critical(error_msg, exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
