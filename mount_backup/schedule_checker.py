"""Schedule checking logic for the optional cron schedule of the backup job."""

from datetime import datetime
from typing import Optional

from croniter import croniter

from .config import BackupJobConfig


class ScheduleChecker:
    """Handles evaluation of the job's cron-based schedule."""

    @staticmethod
    def should_run_backup(
        config: BackupJobConfig, current_time: datetime = None
    ) -> bool:
        """
        Check if the backup should run based on its cron schedule.

        A job without a schedule always runs.

        Args:
            config: The backup job configuration
            current_time: Current time (defaults to now)

        Returns:
            True if backup should run today, False otherwise
        """
        if config.schedule is None:
            return True

        if current_time is None:
            current_time = datetime.now()

        try:
            cron = croniter(config.schedule, current_time)

            # Get the previous occurrence (when this schedule last matched)
            prev_occurrence = cron.get_prev(datetime)

            # The job is started once a day from cron; it is due if the schedule
            # fired between midnight and now
            today_start = current_time.replace(
                hour=0, minute=0, second=0, microsecond=0
            )

            return prev_occurrence >= today_start

        except Exception as e:
            raise ValueError(
                f"Error evaluating schedule '{config.schedule}' for '{config.device_name}': {e}"
            ) from e

    @staticmethod
    def next_run_time(
        config: BackupJobConfig, current_time: datetime = None
    ) -> Optional[datetime]:
        """
        Get the next time the backup is scheduled to run.

        Returns:
            Next scheduled run time, or None when no schedule is configured
        """
        if config.schedule is None:
            return None

        if current_time is None:
            current_time = datetime.now()

        try:
            cron = croniter(config.schedule, current_time)
            return cron.get_next(datetime)
        except Exception as e:
            raise ValueError(
                f"Error calculating next run time for '{config.device_name}': {e}"
            ) from e
