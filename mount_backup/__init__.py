"""
local-mount-backup: Periodic rsync backup onto a removable drive.

This package mounts the backup drive by UUID, copies the configured source
directories into it with rsync from a detached worker process, and derives
the run history from the per-run log files it leaves behind.
"""

__version__ = "0.1.0"
