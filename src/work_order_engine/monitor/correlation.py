"""Group triage findings that share a causal signature in recent execution-log text."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, cast

import structlog
import yaml

from work_order_engine.domain.models import CorrelationGroup, TriageEntry
from work_order_engine.persistence.repositories import ExecutionLogRepo

if TYPE_CHECKING:
    import sqlite3

    from work_order_engine.persistence.state_db import StateDB

DEFAULT_SIGNATURES_PATH: Final[Path] = Path(__file__).with_name("signatures.yaml")
MIN_GROUP_SIZE: Final[int] = 2

_REQUIRED_FIELDS: Final[frozenset[str]] = frozenset({"correlation_type", "patterns", "root_cause"})


@dataclass(frozen=True, slots=True)
class CorrelationSignature:
    correlation_type: str
    patterns: tuple[str, ...]
    root_cause: str

    def matches(self, text: str) -> bool:
        lowered = text.lower()
        return any(
            re.search(rf"(?<![0-9a-z]){re.escape(pattern)}(?![0-9a-z])", lowered) is not None
            for pattern in self.patterns
        )


def load_signatures(path: str | Path | None = None) -> tuple[CorrelationSignature, ...]:
    """Load signatures from ``path`` or the bundled catalog."""

    source = DEFAULT_SIGNATURES_PATH if path is None else Path(path).expanduser()
    try:
        with source.open("r", encoding="utf-8") as handle:
            loaded = cast("object", yaml.safe_load(handle))
    except yaml.YAMLError as exc:
        raise ValueError(f"{source}: invalid YAML ({exc})") from exc

    if not isinstance(loaded, list):
        raise ValueError(f"{source}: expected top-level YAML sequence, got {type(loaded).__name__}")

    signatures: list[CorrelationSignature] = []
    seen: set[str] = set()
    for index, item in enumerate(loaded):
        signature = _parse_signature(item, location=f"{source.name}[{index}]")
        if signature.correlation_type in seen:
            raise ValueError(
                f"{source.name}[{index}]: duplicate correlation_type "
                f"{signature.correlation_type!r}"
            )
        seen.add(signature.correlation_type)
        signatures.append(signature)
    return tuple(signatures)


def _parse_signature(value: object, *, location: str) -> CorrelationSignature:
    if not isinstance(value, Mapping):
        raise ValueError(f"{location}: expected mapping, got {type(value).__name__}")
    keys = {str(key) for key in value}
    missing = sorted(_REQUIRED_FIELDS - keys)
    if missing:
        raise ValueError(f"{location}: missing required fields: {missing}")
    unknown = sorted(keys - _REQUIRED_FIELDS)
    if unknown:
        raise ValueError(f"{location}: unexpected fields: {unknown}")

    correlation_type = value["correlation_type"]
    root_cause = value["root_cause"]
    patterns = value["patterns"]
    if not isinstance(correlation_type, str) or not correlation_type.strip():
        raise ValueError(f"{location}.correlation_type: expected non-empty string")
    if not isinstance(root_cause, str) or not root_cause.strip():
        raise ValueError(f"{location}.root_cause: expected non-empty string")
    if not isinstance(patterns, list) or not patterns:
        raise ValueError(f"{location}.patterns: expected non-empty list")

    normalized: list[str] = []
    for index, pattern in enumerate(patterns):
        # YAML turns bare numbers like 429 into ints.
        if isinstance(pattern, bool) or not isinstance(pattern, (str, int)):
            raise ValueError(f"{location}.patterns[{index}]: expected string")
        text = str(pattern).strip().lower()
        if not text:
            raise ValueError(f"{location}.patterns[{index}]: expected non-empty string")
        normalized.append(text)

    return CorrelationSignature(
        correlation_type=correlation_type.strip(),
        patterns=tuple(dict.fromkeys(normalized)),
        root_cause=root_cause.strip(),
    )


class Correlator:
    """Match sweep findings against signatures; groups need at least two work orders."""

    def __init__(
        self,
        db: StateDB,
        *,
        signatures: Sequence[CorrelationSignature] | None = None,
        scan_limit: int = 50,
        logger: Any | None = None,
    ) -> None:
        if scan_limit <= 0:
            raise ValueError("scan_limit must be > 0")
        self._exec_log = ExecutionLogRepo(db)
        self._signatures = tuple(signatures) if signatures is not None else load_signatures()
        self._scan_limit = scan_limit
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def signatures(self) -> tuple[CorrelationSignature, ...]:
        return self._signatures

    def correlate(
        self,
        entries: Iterable[TriageEntry],
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[CorrelationGroup]:
        by_work_order: dict[str, list[str]] = {}
        for entry in entries:
            by_work_order.setdefault(entry.work_order_id, []).append(entry.id)
        if not by_work_order or not self._signatures:
            return []

        texts = {
            work_order_id: self._recent_text(work_order_id, conn=conn)
            for work_order_id in by_work_order
        }

        groups: list[CorrelationGroup] = []
        for signature in self._signatures:
            matched = [
                work_order_id
                for work_order_id, text in texts.items()
                if signature.matches(text)
            ]
            if len(matched) < MIN_GROUP_SIZE:
                continue
            entry_ids = [
                entry_id for work_order_id in matched for entry_id in by_work_order[work_order_id]
            ]
            groups.append(
                CorrelationGroup(
                    correlation_type=signature.correlation_type,
                    work_order_ids=tuple(matched),
                    root_cause=signature.root_cause,
                    triage_entry_ids=tuple(entry_ids),
                )
            )
            self._logger.info(
                "correlation_group_found",
                correlation_type=signature.correlation_type,
                group_size=len(matched),
            )
        return groups

    def _recent_text(self, work_order_id: str, *, conn: sqlite3.Connection | None) -> str:
        rows = self._exec_log.list_for_work_order(
            work_order_id, limit=self._scan_limit, conn=conn
        )
        return "\n".join(row.message_text() for row in rows)


__all__ = [
    "DEFAULT_SIGNATURES_PATH",
    "MIN_GROUP_SIZE",
    "CorrelationSignature",
    "Correlator",
    "load_signatures",
]
