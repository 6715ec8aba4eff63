"""Diagnostic logger for stub calls.

Uses the standard ``logging`` module with the ``"rpc_fallback"`` logger.
No ``print()`` statements. Supports three verbosity levels and an
in-memory diagnostic mode for post-hoc analysis.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from rpc_fallback.config import FallbackClientConfig
    from rpc_fallback.logging.types import CallRecord

logger = logging.getLogger("rpc_fallback")


class CallLogger:
    """Per-call diagnostic logger.

    Log levels:
        ``"none"``: No logging output. Records are still stored if
        ``diagnostic_mode=True``.

        ``"summary"``: One line per call with method, outcome, status and
        duration. Failed calls log at WARNING, the rest at INFO.

        ``"full"``: Full JSON dump of all record fields.

    Diagnostic mode stores all records in memory for ``get_diagnostic_data()``
    and ``get_summary_stats()``.
    """

    def __init__(self, config: FallbackClientConfig) -> None:
        self._log_level = config.log_level
        self._diagnostic_mode = config.diagnostic_mode
        self._records: list[CallRecord] = []

    def log_call(self, record: CallRecord) -> None:
        """Log a single finished call."""
        if self._diagnostic_mode:
            self._records.append(record)

        if self._log_level == "none":
            return

        level = logging.INFO if record.outcome in ("ok", "cancelled") else logging.WARNING
        if self._log_level == "summary":
            logger.log(
                level,
                "call=%s outcome=%s status=%s req=%dB resp=%dB total=%.2fms",
                record.method,
                record.outcome,
                record.status_code,
                record.request_bytes,
                record.response_bytes,
                record.duration_ms,
            )
        elif self._log_level == "full":
            logger.log(level, "call_record: %s", json.dumps(asdict(record), default=str))

    def get_diagnostic_data(self) -> list[CallRecord]:
        """Return all stored records (empty unless ``diagnostic_mode=True``)."""
        return list(self._records)

    def get_summary_stats(self) -> dict[str, Any]:
        """Compute summary statistics over all stored records.

        Returns:
            Dictionary with aggregate stats, or empty dict if no records.
        """
        if not self._records:
            return {}

        durations = [r.duration_ms for r in self._records]
        outcomes: dict[str, int] = {}
        for record in self._records:
            outcomes[record.outcome] = outcomes.get(record.outcome, 0) + 1

        n = len(self._records)
        error_count = n - outcomes.get("ok", 0)
        return {
            "total_calls": n,
            "outcomes": outcomes,
            "error_count": error_count,
            "error_rate": error_count / n,
            "mean_duration_ms": sum(durations) / n,
            "max_duration_ms": max(durations),
            "total_request_bytes": sum(r.request_bytes for r in self._records),
            "total_response_bytes": sum(r.response_bytes for r in self._records),
        }
