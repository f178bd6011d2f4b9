"""Logging filters."""

import logging

from core.logging.context import get_log_context


class StageContextFilter(logging.Filter):
    """Only pass records emitted while the given stage is in log context."""

    def __init__(self, stage: str):
        super().__init__()
        self.stage = stage

    def filter(self, record: logging.LogRecord) -> bool:
        return get_log_context()["stage"] == self.stage
