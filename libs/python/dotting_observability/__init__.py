"""Shared observability helpers used by the DOTTING services."""

from .logging import current_log_context, log_context, setup_logging
from .metrics import (
    observe_phase_duration,
    observe_provider_response,
    record_compile_outcome,
    record_dispatch,
    setup_fastapi_metrics,
)

__all__ = [
    "setup_logging",
    "log_context",
    "current_log_context",
    "setup_fastapi_metrics",
    "observe_phase_duration",
    "observe_provider_response",
    "record_compile_outcome",
    "record_dispatch",
]
