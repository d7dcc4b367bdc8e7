"""One monitor pass: detectors, correlation, escalation."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Final

import structlog

from work_order_engine.constants import MONITOR_ACTOR
from work_order_engine.domain.models import (
    CorrelationGroup,
    JSONValue,
    TriageEntry,
    TriageType,
    datetime_to_iso8601z,
    utc_now,
)
from work_order_engine.monitor.correlation import Correlator
from work_order_engine.monitor.detectors import DetectorResult, DetectorSuite
from work_order_engine.persistence.repositories import CorrelationRepo

if TYPE_CHECKING:
    from work_order_engine.escalation.policy import EscalationPolicy
    from work_order_engine.persistence.state_db import StateDB

DETECTOR_ORDER: Final[tuple[TriageType, ...]] = (
    TriageType.AUTO_UNBLOCK,
    TriageType.STUCK,
    TriageType.ORPHAN,
    TriageType.MISMATCH,
    TriageType.SPIRAL,
)


@dataclass(slots=True)
class SweepReport:
    started_at: datetime
    elapsed_ms: int = 0
    created: list[TriageEntry] = field(default_factory=list)
    breakdown: dict[str, int] = field(default_factory=dict)
    correlations: list[CorrelationGroup] = field(default_factory=list)
    escalated_ids: list[str] = field(default_factory=list)
    dispatched_task_id: str | None = None
    detector_errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.detector_errors

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "started_at": datetime_to_iso8601z(self.started_at),
            "elapsed_ms": self.elapsed_ms,
            "triage_count": len(self.created),
            "created": [entry.to_dict() for entry in self.created],
            "breakdown": dict(self.breakdown),
            "correlation_count": len(self.correlations),
            "correlations": [group.to_dict() for group in self.correlations],
            "escalated_ids": list(self.escalated_ids),
            "dispatched_task_id": self.dispatched_task_id,
            "detector_errors": dict(self.detector_errors),
        }


class MonitorSweep:
    """Runs every detector in a fixed order; a failing step never stops the later ones."""

    def __init__(
        self,
        db: StateDB,
        detectors: DetectorSuite,
        policy: EscalationPolicy,
        *,
        correlator: Correlator | None = None,
        logger: Any | None = None,
    ) -> None:
        self._detectors = detectors
        self._policy = policy
        self._correlator = (
            correlator
            if correlator is not None
            else Correlator(db, scan_limit=detectors.settings.exec_log_scan_limit)
        )
        self._correlations = CorrelationRepo(db)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def run(self, now: datetime | None = None) -> SweepReport:
        at = now or utc_now()
        started = time.monotonic()
        report = SweepReport(started_at=at)
        observed: list[TriageEntry] = []

        runners: dict[TriageType, Callable[[datetime], DetectorResult]] = {
            TriageType.AUTO_UNBLOCK: self._detectors.auto_unblock,
            TriageType.STUCK: self._detectors.stuck,
            TriageType.ORPHAN: self._detectors.orphan,
            TriageType.MISMATCH: self._detectors.mismatch,
            TriageType.SPIRAL: self._detectors.spiral,
        }
        for triage_type in DETECTOR_ORDER:
            try:
                result = runners[triage_type](at)
            except Exception as exc:  # noqa: BLE001
                self._logger.exception(
                    "detector_failed", detector=triage_type.value, error=str(exc)
                )
                report.detector_errors[triage_type.value] = f"{type(exc).__name__}: {exc}"
                report.breakdown[triage_type.value] = 0
                continue
            report.created.extend(result.created)
            report.breakdown[triage_type.value] = len(result.created)
            observed.extend(result.observed)

        try:
            report.correlations = self._correlator.correlate(observed)
        except Exception as exc:  # noqa: BLE001
            self._logger.exception("correlation_failed", error=str(exc))
            report.detector_errors["correlation"] = f"{type(exc).__name__}: {exc}"
        for group in report.correlations:
            try:
                self._correlations.record(group, created_by=MONITOR_ACTOR, now=at)
            except Exception as exc:  # noqa: BLE001
                self._logger.exception(
                    "correlation_record_failed",
                    correlation_type=group.correlation_type,
                    error=str(exc),
                )
                report.detector_errors["correlation_record"] = f"{type(exc).__name__}: {exc}"

        try:
            outcome = self._policy.apply(observed, report.correlations, now=at)
        except Exception as exc:  # noqa: BLE001
            self._logger.exception("escalation_failed", error=str(exc))
            report.detector_errors["escalation"] = f"{type(exc).__name__}: {exc}"
        else:
            report.escalated_ids = list(outcome.escalated_ids)
            report.dispatched_task_id = outcome.dispatched_task_id

        report.elapsed_ms = max(int(round((time.monotonic() - started) * 1000)), 0)
        self._logger.info(
            "monitor_sweep_complete",
            elapsed_ms=report.elapsed_ms,
            triage_count=len(report.created),
            correlation_count=len(report.correlations),
            escalated_count=len(report.escalated_ids),
            detector_errors=sorted(report.detector_errors),
            **{f"count_{key}": value for key, value in report.breakdown.items()},
        )
        return report


__all__ = ["DETECTOR_ORDER", "MonitorSweep", "SweepReport"]
