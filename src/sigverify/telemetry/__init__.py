"""Logging configuration, trace correlation and message sanitizing."""

from __future__ import annotations

from sigverify.telemetry.logging import add_trace_context, configure_logging
from sigverify.telemetry.sanitization import sanitize_error_message

__all__ = ["add_trace_context", "configure_logging", "sanitize_error_message"]
