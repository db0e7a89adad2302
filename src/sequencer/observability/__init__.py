"""Structured logging for the sequencer."""

from .logging import bind_run_id, configure_logging, get_logger, run_id_ctx

__all__ = [
    "bind_run_id",
    "configure_logging",
    "get_logger",
    "run_id_ctx",
]
