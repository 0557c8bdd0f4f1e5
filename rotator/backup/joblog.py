"""
Per-run and monthly job log files.

Both files are append-only text: a fixed header (tool, start time, host,
user) followed by '[YYYY-MM-DD HH:MM:SS] LEVEL message' lines. Entries are
the records of the 'rotator.job' logger, which JobResult writes to; the
file handlers are attached only while a JobLog is open.
"""

import getpass
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

JOB_LOGGER_NAME = 'rotator.job'
ENTRY_FORMAT = '[%(asctime)s] %(levelname)s %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return os.environ.get('USERNAME') or 'unknown'


class JobLog:
    """
    Log files of one run.

    Usage:
        joblog = JobLog(log_dir, 'rotator', 'HOST', started_at)
        fallback_error = joblog.open()
        ...
        joblog.close()
    """

    def __init__(self, log_dir, tool_name: str, host_id: str, started_at: datetime, user: Optional[str] = None):
        self.log_dir = Path(log_dir)
        self.tool_name = tool_name
        self.host_id = host_id
        self.started_at = started_at
        self.user = user or current_user()
        self.stamp = started_at.strftime('%Y-%m-%d_%H%M%S')
        self._handlers = []

    @property
    def run_log_path(self) -> Path:
        return self.log_dir / f"{self.stamp}.log"

    @property
    def monthly_log_path(self) -> Path:
        return self.log_dir / f"{self.started_at.strftime('%Y-%m')}.log"

    def side_log_path(self, suffix: str) -> Path:
        """Path for a tool output log stored next to the run log."""
        return self.log_dir / f"{self.stamp}-{suffix}.log"

    def open(self) -> Optional[str]:
        """
        Create the log directory, write headers and attach file handlers.

        Returns:
            None, or the error text when the configured directory could not
            be created and the system temp directory is used instead
        """
        fallback_error = None

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            fallback_error = str(e)
            self.log_dir = Path(tempfile.gettempdir()) / self.tool_name / 'logs'
            self.log_dir.mkdir(parents=True, exist_ok=True)

        header = self._header()
        for path in (self.run_log_path, self.monthly_log_path):
            with open(path, 'a', encoding='utf-8') as f:
                f.write(header)

        formatter = logging.Formatter(ENTRY_FORMAT, datefmt=DATE_FORMAT)
        job_logger = logging.getLogger(JOB_LOGGER_NAME)
        job_logger.setLevel(logging.INFO)

        for path in (self.run_log_path, self.monthly_log_path):
            handler = logging.FileHandler(path, mode='a', encoding='utf-8')
            handler.setLevel(logging.INFO)
            handler.setFormatter(formatter)
            job_logger.addHandler(handler)
            self._handlers.append(handler)

        return fallback_error

    def close(self):
        """Detach and close the file handlers."""
        job_logger = logging.getLogger(JOB_LOGGER_NAME)
        for handler in self._handlers:
            job_logger.removeHandler(handler)
            handler.close()
        self._handlers = []

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _header(self) -> str:
        rule = '=' * 60
        return (
            f"{rule}\n"
            f"Tool:    {self.tool_name}\n"
            f"Started: {self.started_at.strftime(DATE_FORMAT)}\n"
            f"Host:    {self.host_id}\n"
            f"User:    {self.user}\n"
            f"{rule}\n"
        )


def write_output_log(path, lines: Iterable[str]) -> Optional[str]:
    """
    Persist the captured output of an external tool.

    Returns:
        The path written, or None if the file could not be written
    """
    try:
        with open(path, 'w', encoding='utf-8') as f:
            for line in lines:
                f.write(f"{line}\n")
    except OSError as e:
        logger.warning(f"Could not write tool output to {path}: {e}")
        return None
    return str(path)
