"""Run provenance tracking for audit.

Every apply and destroy is stamped with a provenance record that answers:
- "What changed, and in which run?"
- "Who ran it, from which commit, against which state?"
- "Which snapshot serial did the run leave behind?"

Records are emitted as structured log entries so they can be shipped and
queried with the rest of the logs.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from . import __version__

logger = logging.getLogger(__name__)


@dataclass
class ChangeSummary:
    """Summary of operations performed in a run."""

    create_count: int = 0
    update_count: int = 0
    replace_count: int = 0
    delete_count: int = 0

    @property
    def total(self) -> int:
        """Total operations performed."""
        return self.create_count + self.update_count + self.replace_count + self.delete_count


@dataclass
class RunProvenance:
    """Complete provenance record for one apply or destroy run."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    operation: str = ""
    provisioner_version: str = __version__
    actor: str = ""

    # Source of truth
    git_commit_sha: str = ""
    git_branch: str = ""

    # Target
    subscription_id: str = ""
    state_location: str = ""
    lineage: str = ""
    serial: int = 0

    # Outcome
    drift_detected: bool = False
    cancelled: bool = False
    change_summary: ChangeSummary = field(default_factory=ChangeSummary)
    duration_seconds: float = 0.0
    error: str | None = None
    error_type: str | None = None
    failed_node: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Creates and logs provenance records."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._git_branch = os.environ.get("GIT_BRANCH", "")

    def create_provenance(
        self,
        operation: str,
        subscription_id: str | None,
        state_location: str,
        actor: str = "",
    ) -> RunProvenance:
        """Create a new provenance record for a run."""
        return RunProvenance(
            operation=operation,
            actor=actor,
            git_commit_sha=self._git_commit_sha,
            git_branch=self._git_branch,
            subscription_id=subscription_id or "",
            state_location=state_location,
        )

    def log_provenance(self, provenance: RunProvenance) -> None:
        """Log a completed provenance record.

        Level is ERROR for failed runs, WARNING when drift was found and
        INFO otherwise.
        """
        log_level = logging.INFO
        if provenance.error:
            log_level = logging.ERROR
        elif provenance.drift_detected:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Run provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "operation": provenance.operation,
                "changes_applied": provenance.change_summary.total,
                "drift_detected": provenance.drift_detected,
                "serial": provenance.serial,
                "git_commit": provenance.git_commit_sha,
                "duration_seconds": provenance.duration_seconds,
            },
        )


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
