from __future__ import annotations

import contextvars
import logging
from typing import Optional

# Shared context for tagging log records with the task currently being executed.
RUN_LOG_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "agent_run_log_id",
    default=None,
)


class RunLogIdFilter(logging.Filter):
    """Attach ``run_log_id`` to every record so formatters can include it."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_log_id = RUN_LOG_ID.get() or "-"
        return True


__all__ = ["RUN_LOG_ID", "RunLogIdFilter"]
