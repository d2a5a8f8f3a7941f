"""
Single exit path for failed runs

Every stage runs inside EscalationController.guard(). The first error
trips the controller, which reports to Telegram, uploads the run log
and exits with status 1. The controller disarms itself before doing
any of that, so an error raised while reporting can never trip it a
second time.
"""

import sys
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Optional

from .errors import BuildError
from .log import log_message
from .telegram import RunReport, TelegramReporter, escape_md_v2, failure_message


class State(Enum):
    ARMED = "armed"
    TRIPPED = "tripped"
    TERMINATED = "terminated"


class EscalationController:

    def __init__(self, log_file: Path, reporter: Optional[TelegramReporter] = None):
        self.log_file = log_file
        self.reporter = reporter
        self.state = State.ARMED
        self.report: Optional[RunReport] = None

    def attach(self, reporter: TelegramReporter):
        self.reporter = reporter

    def trip(self, message: str):
        """
        Reports message as the run's failure and exits with status 1.
        Never returns
        """
        if self.state is not State.ARMED:
            log_message(f"Error while handling a previous failure: {message}", "ERROR")
            self.state = State.TERMINATED
            sys.exit(1)

        self.state = State.TRIPPED
        log_message(message, "ERROR")
        self.report = RunReport("failure", message, log_path=self.log_file)

        if self.reporter is not None:
            self._send_failure(message)
            self._upload_log()

        self.state = State.TERMINATED
        sys.exit(1)

    def _send_failure(self, message: str):
        try:
            self.reporter.send_message(failure_message(message))
        except Exception as e:
            log_message(f"Failed to send failure report: {e}", "ERROR")

    def _upload_log(self):
        if not self.log_file.is_file():
            log_message(f"No build log to upload at {self.log_file}", "WARN")
            return
        try:
            self.reporter.send_document(self.log_file, escape_md_v2("Build log"))
        except Exception as e:
            log_message(f"Failed to upload build log: {e}", "ERROR")

    @contextmanager
    def guard(self, stage: str):
        """Routes any error raised in the block to trip()"""
        try:
            yield
        except BuildError as e:
            self.trip(f"{stage}: {e}")
        except Exception as e:
            self.trip(f"{stage}: unexpected {type(e).__name__}: {e}")
