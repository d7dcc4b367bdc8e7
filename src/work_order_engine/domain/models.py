"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import NoReturn, TypeAlias, TypeVar, cast

from work_order_engine.domain import ids as domain_ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_SCHEMA_VERSION = 1
_MAX_TEXT = 16384
_MAX_NAME = 256
_MAX_JSON_DEPTH = 16
_MAX_JSON_COLLECTION = 512
_MESSAGE_DETAIL_KEYS = ("content", "error", "message")


class WorkOrderStatus(StrEnum):
    DRAFT = "draft"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    REVIEW = "review"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATUSES: frozenset[WorkOrderStatus] = frozenset(
    {WorkOrderStatus.DONE, WorkOrderStatus.CANCELLED, WorkOrderStatus.FAILED}
)
ACTIVE_STATUSES: frozenset[WorkOrderStatus] = frozenset(
    status for status in WorkOrderStatus if status not in TERMINAL_STATUSES
)


class Priority(StrEnum):
    P0_CRITICAL = "p0_critical"
    P1_HIGH = "p1_high"
    P2_MEDIUM = "p2_medium"
    P3_LOW = "p3_low"


class TriageType(StrEnum):
    STUCK = "stuck"
    ORPHAN = "orphan"
    AUTO_UNBLOCK = "auto_unblock"
    MISMATCH = "mismatch"
    SPIRAL = "spiral"


class Severity(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    INFO = "info"


class TriageState(StrEnum):
    OPEN = "open"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


class TaskStatus(StrEnum):
    PENDING = "pending"
    CLAIMED = "claimed"
    ACKED = "acked"
    DEAD = "dead"


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        if not isinstance(raw, str):
            _fail(cls.__name__, f"expected JSON string, got {type(raw).__name__}")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


def canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def utc_now() -> datetime:
    return datetime.now(UTC)


def datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
    strip: bool = True,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip() if strip else value
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, max_len=max_len)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_float(
    value: object,
    path: str,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    if minimum is not None and parsed < minimum:
        _fail(path, f"must be >= {minimum}")
    if maximum is not None and parsed > maximum:
        _fail(path, f"must be <= {maximum}")
    return parsed


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _as_optional_datetime(value: object, path: str) -> datetime | None:
    if value is None:
        return None
    return _as_datetime(value, path)


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_str_tuple(
    value: object,
    path: str,
    *,
    allow_empty: bool,
    unique: bool,
    max_len: int = _MAX_TEXT,
) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        _fail(path, f"expected array, got {type(value).__name__}")
    if not allow_empty and not value:
        _fail(path, "must not be empty")
    if len(value) > _MAX_JSON_COLLECTION:
        _fail(path, f"too many items (>{_MAX_JSON_COLLECTION})")

    parsed = [_as_str(item, f"{path}[{index}]", max_len=max_len) for index, item in enumerate(value)]
    if unique and len(set(parsed)) != len(parsed):
        _fail(path, "contains duplicate values")
    return tuple(parsed)


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        _fail(path, f"JSON nesting exceeds max depth {_MAX_JSON_DEPTH}")

    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, (list, tuple)):
        if len(value) > _MAX_JSON_COLLECTION:
            _fail(path, f"list length exceeds {_MAX_JSON_COLLECTION}")
        return [
            _as_json_value(item, f"{path}[{idx}]", depth=depth + 1)
            for idx, item in enumerate(value)
        ]
    if isinstance(value, Mapping):
        if len(value) > _MAX_JSON_COLLECTION:
            _fail(path, f"object size exceeds {_MAX_JSON_COLLECTION}")
        parsed: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, f"object key must be string, got {type(key).__name__}")
            parsed[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return parsed

    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


def _as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        _fail(path, "expected JSON object")
    return parsed


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, Enum):
        raw = value.value
        if not isinstance(raw, str):
            _fail(path, "enum value must be string")
        return raw
    if isinstance(value, (int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, datetime):
        return datetime_to_iso8601z(value)
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


def _validate_work_order_id(value: object, path: str) -> str:
    parsed = _as_str(value, path)
    try:
        domain_ids.validate_work_order_id(parsed)
    except ValueError as exc:
        _fail(path, str(exc))
    return parsed


def _validate_prefixed(value: object, path: str, prefix: str) -> str:
    parsed = _as_str(value, path)
    try:
        domain_ids.validate_prefixed_id(parsed, prefix)
    except ValueError as exc:
        _fail(path, str(exc))
    return parsed


def _as_schema_version(value: object, path: str) -> int:
    return _as_int(value, path, minimum=1)


@dataclass(slots=True)
class WorkOrder(CanonicalModel):
    id: str
    slug: str
    name: str
    objective: str = ""
    status: WorkOrderStatus = WorkOrderStatus.DRAFT
    priority: Priority = Priority.P2_MEDIUM
    parent_id: str | None = None
    depends_on: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    acceptance_criteria: str = ""
    summary: str | None = None
    cancellation_reason: str | None = None
    source: str = "manual"
    claimed_by: str | None = None
    execution_mode: str = "remote"
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    schema_version: int = _SCHEMA_VERSION

    def __post_init__(self) -> None:
        self.schema_version = _as_schema_version(self.schema_version, "WorkOrder.schema_version")
        self.id = _validate_work_order_id(self.id, "WorkOrder.id")
        self.slug = _as_str(self.slug, "WorkOrder.slug", max_len=32)
        try:
            domain_ids.validate_slug(self.slug)
        except ValueError as exc:
            _fail("WorkOrder.slug", str(exc))
        self.name = _as_str(self.name, "WorkOrder.name", max_len=_MAX_NAME)
        self.objective = _as_str(self.objective, "WorkOrder.objective", min_len=0)
        self.status = _as_enum(WorkOrderStatus, self.status, "WorkOrder.status")
        self.priority = _as_enum(Priority, self.priority, "WorkOrder.priority")

        if self.parent_id is not None:
            self.parent_id = _validate_work_order_id(self.parent_id, "WorkOrder.parent_id")
            if self.parent_id == self.id:
                _fail("WorkOrder.parent_id", "work order cannot be its own parent")

        self.depends_on = _as_str_tuple(
            self.depends_on, "WorkOrder.depends_on", allow_empty=True, unique=True
        )
        for index, dependency in enumerate(self.depends_on):
            _validate_work_order_id(dependency, f"WorkOrder.depends_on[{index}]")
        if self.id in self.depends_on:
            _fail("WorkOrder.depends_on", "work order cannot depend on itself")

        self.tags = _as_str_tuple(
            self.tags, "WorkOrder.tags", allow_empty=True, unique=True, max_len=64
        )
        self.acceptance_criteria = _as_str(
            self.acceptance_criteria, "WorkOrder.acceptance_criteria", min_len=0
        )
        self.summary = _as_optional_str(self.summary, "WorkOrder.summary")
        self.cancellation_reason = _as_optional_str(
            self.cancellation_reason, "WorkOrder.cancellation_reason"
        )
        self.source = _as_str(self.source, "WorkOrder.source", max_len=64)
        self.claimed_by = _as_optional_str(self.claimed_by, "WorkOrder.claimed_by", max_len=128)
        self.execution_mode = _as_str(self.execution_mode, "WorkOrder.execution_mode", max_len=32)

        self.created_at = _as_datetime(self.created_at, "WorkOrder.created_at")
        self.updated_at = _as_datetime(self.updated_at, "WorkOrder.updated_at")
        self.started_at = _as_optional_datetime(self.started_at, "WorkOrder.started_at")
        self.completed_at = _as_optional_datetime(self.completed_at, "WorkOrder.completed_at")
        if self.updated_at < self.created_at:
            _fail("WorkOrder.updated_at", "must be >= WorkOrder.created_at")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> WorkOrder:
        parsed = _expect_object(
            data,
            "WorkOrder",
            required={"id", "slug", "name"},
            optional={
                "objective",
                "status",
                "priority",
                "parent_id",
                "depends_on",
                "tags",
                "acceptance_criteria",
                "summary",
                "cancellation_reason",
                "source",
                "claimed_by",
                "execution_mode",
                "created_at",
                "updated_at",
                "started_at",
                "completed_at",
                "schema_version",
            },
        )
        now = utc_now()
        return cls(
            id=_as_str(parsed["id"], "WorkOrder.id"),
            slug=_as_str(parsed["slug"], "WorkOrder.slug"),
            name=_as_str(parsed["name"], "WorkOrder.name"),
            objective=cast("str", parsed.get("objective", "")),
            status=_as_enum(
                WorkOrderStatus, parsed.get("status", WorkOrderStatus.DRAFT), "WorkOrder.status"
            ),
            priority=_as_enum(
                Priority, parsed.get("priority", Priority.P2_MEDIUM), "WorkOrder.priority"
            ),
            parent_id=_as_optional_str(parsed.get("parent_id"), "WorkOrder.parent_id"),
            depends_on=_as_str_tuple(
                parsed.get("depends_on", ()),
                "WorkOrder.depends_on",
                allow_empty=True,
                unique=True,
            ),
            tags=_as_str_tuple(
                parsed.get("tags", ()), "WorkOrder.tags", allow_empty=True, unique=True
            ),
            acceptance_criteria=cast("str", parsed.get("acceptance_criteria", "")),
            summary=_as_optional_str(parsed.get("summary"), "WorkOrder.summary"),
            cancellation_reason=_as_optional_str(
                parsed.get("cancellation_reason"), "WorkOrder.cancellation_reason"
            ),
            source=cast("str", parsed.get("source", "manual")),
            claimed_by=_as_optional_str(parsed.get("claimed_by"), "WorkOrder.claimed_by"),
            execution_mode=cast("str", parsed.get("execution_mode", "remote")),
            created_at=_as_datetime(parsed.get("created_at", now), "WorkOrder.created_at"),
            updated_at=_as_datetime(parsed.get("updated_at", now), "WorkOrder.updated_at"),
            started_at=_as_optional_datetime(parsed.get("started_at"), "WorkOrder.started_at"),
            completed_at=_as_optional_datetime(
                parsed.get("completed_at"), "WorkOrder.completed_at"
            ),
            schema_version=_as_schema_version(
                parsed.get("schema_version", _SCHEMA_VERSION), "WorkOrder.schema_version"
            ),
        )


# Diagnostic context variants. ``kind`` is the discriminator carried in the serialized form.


@dataclass(slots=True)
class StuckContext(CanonicalModel):
    slug: str
    started_at: datetime
    last_activity: datetime
    kind: TriageType = field(default=TriageType.STUCK, init=False)

    def __post_init__(self) -> None:
        self.slug = _as_str(self.slug, "StuckContext.slug", max_len=32)
        self.started_at = _as_datetime(self.started_at, "StuckContext.started_at")
        self.last_activity = _as_datetime(self.last_activity, "StuckContext.last_activity")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StuckContext:
        parsed = _expect_object(
            data,
            "StuckContext",
            required={"slug", "started_at", "last_activity"},
            optional={"kind"},
        )
        return cls(
            slug=cast("str", parsed["slug"]),
            started_at=_as_datetime(parsed["started_at"], "StuckContext.started_at"),
            last_activity=_as_datetime(parsed["last_activity"], "StuckContext.last_activity"),
        )


@dataclass(slots=True)
class OrphanContext(CanonicalModel):
    idle_minutes: int
    kind: TriageType = field(default=TriageType.ORPHAN, init=False)

    def __post_init__(self) -> None:
        self.idle_minutes = _as_int(self.idle_minutes, "OrphanContext.idle_minutes", minimum=0)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> OrphanContext:
        parsed = _expect_object(
            data, "OrphanContext", required={"idle_minutes"}, optional={"kind"}
        )
        return cls(idle_minutes=cast("int", parsed["idle_minutes"]))


@dataclass(slots=True)
class AutoUnblockContext(CanonicalModel):
    cleared_dependencies: tuple[str, ...]
    kind: TriageType = field(default=TriageType.AUTO_UNBLOCK, init=False)

    def __post_init__(self) -> None:
        self.cleared_dependencies = _as_str_tuple(
            self.cleared_dependencies,
            "AutoUnblockContext.cleared_dependencies",
            allow_empty=False,
            unique=True,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> AutoUnblockContext:
        parsed = _expect_object(
            data,
            "AutoUnblockContext",
            required={"cleared_dependencies"},
            optional={"kind"},
        )
        return cls(
            cleared_dependencies=_as_str_tuple(
                parsed["cleared_dependencies"],
                "AutoUnblockContext.cleared_dependencies",
                allow_empty=False,
                unique=True,
            )
        )


@dataclass(slots=True)
class MismatchContext(CanonicalModel):
    status: str
    last_phase: str
    kind: TriageType = field(default=TriageType.MISMATCH, init=False)

    def __post_init__(self) -> None:
        self.status = _as_str(self.status, "MismatchContext.status", max_len=64)
        self.last_phase = _as_str(self.last_phase, "MismatchContext.last_phase", max_len=64)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> MismatchContext:
        parsed = _expect_object(
            data, "MismatchContext", required={"status", "last_phase"}, optional={"kind"}
        )
        return cls(status=cast("str", parsed["status"]), last_phase=cast("str", parsed["last_phase"]))


@dataclass(slots=True)
class SpiralContext(CanonicalModel):
    read_ratio: float
    turns: int
    kind: TriageType = field(default=TriageType.SPIRAL, init=False)

    def __post_init__(self) -> None:
        self.read_ratio = _as_float(
            self.read_ratio, "SpiralContext.read_ratio", minimum=0.0, maximum=1.0
        )
        self.turns = _as_int(self.turns, "SpiralContext.turns", minimum=0)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> SpiralContext:
        parsed = _expect_object(
            data, "SpiralContext", required={"read_ratio", "turns"}, optional={"kind"}
        )
        return cls(read_ratio=cast("float", parsed["read_ratio"]), turns=cast("int", parsed["turns"]))


DiagnosticContext: TypeAlias = (
    StuckContext | OrphanContext | AutoUnblockContext | MismatchContext | SpiralContext
)

_CONTEXT_TYPES: dict[TriageType, type[CanonicalModel]] = {
    TriageType.STUCK: StuckContext,
    TriageType.ORPHAN: OrphanContext,
    TriageType.AUTO_UNBLOCK: AutoUnblockContext,
    TriageType.MISMATCH: MismatchContext,
    TriageType.SPIRAL: SpiralContext,
}


def diagnostic_context_from_dict(data: Mapping[str, object]) -> DiagnosticContext:
    """Rebuild the context variant named by the ``kind`` discriminator."""

    if not isinstance(data, Mapping):
        _fail("DiagnosticContext", f"expected object, got {type(data).__name__}")
    kind = _as_enum(TriageType, data.get("kind"), "DiagnosticContext.kind")
    context_type = _CONTEXT_TYPES[kind]
    return cast("DiagnosticContext", context_type.from_dict(data))


@dataclass(slots=True)
class TriageEntry(CanonicalModel):
    id: str
    work_order_id: str
    triage_type: TriageType
    severity: Severity
    diagnostic_context: DiagnosticContext
    state: TriageState = TriageState.OPEN
    escalate_to: str | None = None
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    notes: str | None = None
    created_by: str = "monitor"
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    resolved_at: datetime | None = None
    schema_version: int = _SCHEMA_VERSION

    def __post_init__(self) -> None:
        self.schema_version = _as_schema_version(self.schema_version, "TriageEntry.schema_version")
        self.id = _validate_prefixed(self.id, "TriageEntry.id", domain_ids.TRIAGE_ID_PREFIX)
        self.work_order_id = _validate_work_order_id(
            self.work_order_id, "TriageEntry.work_order_id"
        )
        self.triage_type = _as_enum(TriageType, self.triage_type, "TriageEntry.triage_type")
        self.severity = _as_enum(Severity, self.severity, "TriageEntry.severity")
        if not isinstance(self.diagnostic_context, tuple(_CONTEXT_TYPES.values())):
            _fail("TriageEntry.diagnostic_context", "must be a diagnostic context variant")
        if self.diagnostic_context.kind is not self.triage_type:
            _fail(
                "TriageEntry.diagnostic_context",
                f"context kind {self.diagnostic_context.kind.value!r} does not match "
                f"triage_type {self.triage_type.value!r}",
            )
        self.state = _as_enum(TriageState, self.state, "TriageEntry.state")
        self.escalate_to = _as_optional_str(self.escalate_to, "TriageEntry.escalate_to", max_len=64)
        self.claimed_by = _as_optional_str(self.claimed_by, "TriageEntry.claimed_by", max_len=128)
        self.claimed_at = _as_optional_datetime(self.claimed_at, "TriageEntry.claimed_at")
        self.notes = _as_optional_str(self.notes, "TriageEntry.notes")
        self.created_by = _as_str(self.created_by, "TriageEntry.created_by", max_len=64)
        self.created_at = _as_datetime(self.created_at, "TriageEntry.created_at")
        self.updated_at = _as_datetime(self.updated_at, "TriageEntry.updated_at")
        self.resolved_at = _as_optional_datetime(self.resolved_at, "TriageEntry.resolved_at")
        if (self.state is TriageState.RESOLVED) != (self.resolved_at is not None):
            _fail("TriageEntry.resolved_at", "must be set exactly when state is resolved")

    @property
    def is_resolved(self) -> bool:
        return self.state is TriageState.RESOLVED

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TriageEntry:
        parsed = _expect_object(
            data,
            "TriageEntry",
            required={"id", "work_order_id", "triage_type", "severity", "diagnostic_context"},
            optional={
                "state",
                "escalate_to",
                "claimed_by",
                "claimed_at",
                "notes",
                "created_by",
                "created_at",
                "updated_at",
                "resolved_at",
                "schema_version",
            },
        )
        context_raw = parsed["diagnostic_context"]
        if isinstance(context_raw, Mapping):
            context = diagnostic_context_from_dict(context_raw)
        else:
            context = cast("DiagnosticContext", context_raw)
        now = utc_now()
        return cls(
            id=cast("str", parsed["id"]),
            work_order_id=cast("str", parsed["work_order_id"]),
            triage_type=_as_enum(TriageType, parsed["triage_type"], "TriageEntry.triage_type"),
            severity=_as_enum(Severity, parsed["severity"], "TriageEntry.severity"),
            diagnostic_context=context,
            state=_as_enum(TriageState, parsed.get("state", TriageState.OPEN), "TriageEntry.state"),
            escalate_to=_as_optional_str(parsed.get("escalate_to"), "TriageEntry.escalate_to"),
            claimed_by=_as_optional_str(parsed.get("claimed_by"), "TriageEntry.claimed_by"),
            claimed_at=_as_optional_datetime(parsed.get("claimed_at"), "TriageEntry.claimed_at"),
            notes=_as_optional_str(parsed.get("notes"), "TriageEntry.notes"),
            created_by=cast("str", parsed.get("created_by", "monitor")),
            created_at=_as_datetime(parsed.get("created_at", now), "TriageEntry.created_at"),
            updated_at=_as_datetime(parsed.get("updated_at", now), "TriageEntry.updated_at"),
            resolved_at=_as_optional_datetime(parsed.get("resolved_at"), "TriageEntry.resolved_at"),
            schema_version=_as_schema_version(
                parsed.get("schema_version", _SCHEMA_VERSION), "TriageEntry.schema_version"
            ),
        )


@dataclass(slots=True)
class CorrelationGroup(CanonicalModel):
    """Findings from one sweep believed to share a root cause."""

    correlation_type: str
    work_order_ids: tuple[str, ...]
    root_cause: str
    triage_entry_ids: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        self.correlation_type = _as_str(
            self.correlation_type, "CorrelationGroup.correlation_type", max_len=64
        )
        self.work_order_ids = _as_str_tuple(
            self.work_order_ids, "CorrelationGroup.work_order_ids", allow_empty=False, unique=True
        )
        self.root_cause = _as_str(self.root_cause, "CorrelationGroup.root_cause")
        self.triage_entry_ids = _as_str_tuple(
            self.triage_entry_ids,
            "CorrelationGroup.triage_entry_ids",
            allow_empty=True,
            unique=True,
        )

    @property
    def size(self) -> int:
        return len(self.work_order_ids)


@dataclass(slots=True)
class AuditRecord(CanonicalModel):
    id: str
    work_order_id: str
    event_type: str
    actor: str
    previous_status: WorkOrderStatus | None = None
    new_status: WorkOrderStatus | None = None
    payload: dict[str, JSONValue] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.id = _validate_prefixed(self.id, "AuditRecord.id", domain_ids.AUDIT_ID_PREFIX)
        self.work_order_id = _validate_work_order_id(
            self.work_order_id, "AuditRecord.work_order_id"
        )
        self.event_type = _as_str(self.event_type, "AuditRecord.event_type", max_len=64)
        self.actor = _as_str(self.actor, "AuditRecord.actor", max_len=128)
        if self.previous_status is not None:
            self.previous_status = _as_enum(
                WorkOrderStatus, self.previous_status, "AuditRecord.previous_status"
            )
        if self.new_status is not None:
            self.new_status = _as_enum(WorkOrderStatus, self.new_status, "AuditRecord.new_status")
        self.payload = _as_json_object(self.payload, "AuditRecord.payload")
        self.created_at = _as_datetime(self.created_at, "AuditRecord.created_at")


@dataclass(slots=True)
class ExecutionLogEntry(CanonicalModel):
    id: str
    work_order_id: str
    phase: str
    tool_name: str | None = None
    tool_names: tuple[str, ...] = ()
    success: bool | None = None
    detail: dict[str, JSONValue] = field(default_factory=dict)
    agent_name: str | None = None
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.id = _validate_prefixed(self.id, "ExecutionLogEntry.id", domain_ids.EXEC_LOG_ID_PREFIX)
        self.work_order_id = _validate_work_order_id(
            self.work_order_id, "ExecutionLogEntry.work_order_id"
        )
        self.phase = _as_str(self.phase, "ExecutionLogEntry.phase", max_len=64)
        self.tool_name = _as_optional_str(self.tool_name, "ExecutionLogEntry.tool_name", max_len=128)
        self.tool_names = _as_str_tuple(
            self.tool_names, "ExecutionLogEntry.tool_names", allow_empty=True, unique=False
        )
        if self.success is not None:
            self.success = _as_bool(self.success, "ExecutionLogEntry.success")
        self.detail = _as_json_object(self.detail, "ExecutionLogEntry.detail")
        self.agent_name = _as_optional_str(
            self.agent_name, "ExecutionLogEntry.agent_name", max_len=128
        )
        self.created_at = _as_datetime(self.created_at, "ExecutionLogEntry.created_at")

    def tool_labels(self) -> tuple[str, ...]:
        labels = list(self.tool_names)
        if self.tool_name is not None and self.tool_name not in labels:
            labels.insert(0, self.tool_name)
        return tuple(labels)

    def detail_text(self) -> str:
        return canonical_json(self.detail)

    def message_text(self) -> str:
        """Free-text fields of ``detail`` only; counters and ids never take part."""

        parts = [self.detail.get(key) for key in _MESSAGE_DETAIL_KEYS]
        return "\n".join(part for part in parts if isinstance(part, str))


@dataclass(slots=True)
class QAFinding(CanonicalModel):
    id: str
    work_order_id: str
    category: str
    description: str
    created_at: datetime = field(default_factory=utc_now)
    resolved_at: datetime | None = None

    def __post_init__(self) -> None:
        self.id = _validate_prefixed(self.id, "QAFinding.id", domain_ids.QA_FINDING_ID_PREFIX)
        self.work_order_id = _validate_work_order_id(self.work_order_id, "QAFinding.work_order_id")
        self.category = _as_str(self.category, "QAFinding.category", max_len=64)
        self.description = _as_str(self.description, "QAFinding.description")
        self.created_at = _as_datetime(self.created_at, "QAFinding.created_at")
        self.resolved_at = _as_optional_datetime(self.resolved_at, "QAFinding.resolved_at")


@dataclass(slots=True)
class Lesson(CanonicalModel):
    id: str
    category: str
    pattern: str
    rule: str
    promoted: bool = False
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.id = _validate_prefixed(self.id, "Lesson.id", domain_ids.LESSON_ID_PREFIX)
        self.category = _as_str(self.category, "Lesson.category", max_len=64)
        self.pattern = _as_str(self.pattern, "Lesson.pattern")
        self.rule = _as_str(self.rule, "Lesson.rule")
        self.promoted = _as_bool(self.promoted, "Lesson.promoted")
        self.created_at = _as_datetime(self.created_at, "Lesson.created_at")


@dataclass(slots=True)
class FixTask(CanonicalModel):
    name: str
    objective: str
    acceptance_criteria: str
    tags: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        self.name = _as_str(self.name, "FixTask.name", max_len=_MAX_NAME)
        self.objective = _as_str(self.objective, "FixTask.objective")
        self.acceptance_criteria = _as_str(
            self.acceptance_criteria, "FixTask.acceptance_criteria", min_len=0
        )
        self.tags = _as_str_tuple(
            self.tags, "FixTask.tags", allow_empty=True, unique=True, max_len=64
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> FixTask:
        parsed = _expect_object(
            data,
            "FixTask",
            required={"name", "objective"},
            optional={"acceptance_criteria", "tags"},
        )
        criteria = parsed.get("acceptance_criteria", "")
        if isinstance(criteria, (list, tuple)):
            criteria = "\n".join(
                f"{index}. {_as_str(item, f'FixTask.acceptance_criteria[{index - 1}]')}"
                for index, item in enumerate(criteria, start=1)
            )
        tags = parsed.get("tags", ())
        if isinstance(tags, (list, tuple)):
            tags = tuple(dict.fromkeys(tags))
        return cls(
            name=cast("str", parsed["name"]),
            objective=cast("str", parsed["objective"]),
            acceptance_criteria=cast("str", criteria),
            tags=cast("tuple[str, ...]", tags),
        )


@dataclass(slots=True)
class Diagnosis(CanonicalModel):
    root_cause: str
    contributing_factors: tuple[str, ...]
    recommended_fix: str
    confidence: float
    fix_tasks: tuple[FixTask, ...] = ()
    parse_fallback: bool = False

    def __post_init__(self) -> None:
        self.root_cause = _as_str(self.root_cause, "Diagnosis.root_cause")
        self.contributing_factors = _as_str_tuple(
            self.contributing_factors,
            "Diagnosis.contributing_factors",
            allow_empty=True,
            unique=False,
        )
        self.recommended_fix = _as_str(self.recommended_fix, "Diagnosis.recommended_fix")
        self.confidence = _as_float(
            self.confidence, "Diagnosis.confidence", minimum=0.0, maximum=1.0
        )
        if not isinstance(self.fix_tasks, tuple):
            self.fix_tasks = tuple(self.fix_tasks)
        for index, task in enumerate(self.fix_tasks):
            if not isinstance(task, FixTask):
                _fail(f"Diagnosis.fix_tasks[{index}]", "must be FixTask")
        self.parse_fallback = _as_bool(self.parse_fallback, "Diagnosis.parse_fallback")


@dataclass(slots=True)
class TaskMessage(CanonicalModel):
    id: str
    topic: str
    payload: dict[str, JSONValue] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    max_attempts: int = 5
    visible_at: datetime = field(default_factory=utc_now)
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.id = _validate_prefixed(self.id, "TaskMessage.id", domain_ids.TASK_ID_PREFIX)
        self.topic = _as_str(self.topic, "TaskMessage.topic", max_len=64)
        self.payload = _as_json_object(self.payload, "TaskMessage.payload")
        self.status = _as_enum(TaskStatus, self.status, "TaskMessage.status")
        self.attempts = _as_int(self.attempts, "TaskMessage.attempts", minimum=0)
        self.max_attempts = _as_int(self.max_attempts, "TaskMessage.max_attempts", minimum=1)
        self.visible_at = _as_datetime(self.visible_at, "TaskMessage.visible_at")
        self.claimed_by = _as_optional_str(self.claimed_by, "TaskMessage.claimed_by", max_len=128)
        self.claimed_at = _as_optional_datetime(self.claimed_at, "TaskMessage.claimed_at")
        self.last_error = _as_optional_str(self.last_error, "TaskMessage.last_error")
        self.created_at = _as_datetime(self.created_at, "TaskMessage.created_at")
        self.updated_at = _as_datetime(self.updated_at, "TaskMessage.updated_at")


__all__ = [
    "ACTIVE_STATUSES",
    "AuditRecord",
    "AutoUnblockContext",
    "CanonicalModel",
    "CorrelationGroup",
    "Diagnosis",
    "DiagnosticContext",
    "ExecutionLogEntry",
    "FixTask",
    "JSONValue",
    "Lesson",
    "MismatchContext",
    "OrphanContext",
    "Priority",
    "QAFinding",
    "Severity",
    "SpiralContext",
    "StuckContext",
    "TERMINAL_STATUSES",
    "TaskMessage",
    "TaskStatus",
    "TriageEntry",
    "TriageState",
    "TriageType",
    "WorkOrder",
    "WorkOrderStatus",
    "canonical_json",
    "datetime_to_iso8601z",
    "diagnostic_context_from_dict",
    "utc_now",
]
