# leadflow/core/domain.py
from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(value: Any) -> Optional[datetime]:
    """
    Normalize a stored timestamp to an aware UTC datetime.

    Accepts datetime, ISO-8601 strings (``Z`` suffix included) and epoch
    seconds. Naive datetimes are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Unsupported timestamp value: {value!r}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _ts_out(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# ============================================================================
# ENUMS
# ============================================================================

class LeadStatus(str, Enum):
    WAITING_ASSIGNMENT = "waiting_assignment"
    SCHEDULED = "scheduled"
    ACCEPTED = "accepted"
    IN_PROCESS = "in_process"
    RESCHEDULED = "rescheduled"
    SOLD = "sold"
    NO_SALE = "no_sale"
    CANCELED = "canceled"
    CREDIT_FAIL = "credit_fail"
    EXPIRED = "expired"


class DispatchType(str, Enum):
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"


class CloserStatus(str, Enum):
    ON_DUTY = "On Duty"
    OFF_DUTY = "Off Duty"


class Role(str, Enum):
    SETTER = "setter"
    CLOSER = "closer"
    MANAGER = "manager"
    ADMIN = "admin"


# ============================================================================
# STATE MACHINE
# ============================================================================

TERMINAL_STATUSES = frozenset({
    LeadStatus.SOLD,
    LeadStatus.NO_SALE,
    LeadStatus.CANCELED,
    LeadStatus.CREDIT_FAIL,
    LeadStatus.EXPIRED,
})

# Statuses that count against a closer's load (scheduled only when verified)
ACTIVE_STATUSES = frozenset({
    LeadStatus.WAITING_ASSIGNMENT,
    LeadStatus.SCHEDULED,
    LeadStatus.ACCEPTED,
    LeadStatus.IN_PROCESS,
})

# Disposition outcomes that move the closer in the lineup
WORKING_STATUSES = frozenset({LeadStatus.IN_PROCESS, LeadStatus.ACCEPTED})
EXCEPTION_STATUSES = frozenset({LeadStatus.CANCELED, LeadStatus.RESCHEDULED})
COMPLETION_STATUSES = frozenset({LeadStatus.SOLD, LeadStatus.NO_SALE, LeadStatus.CREDIT_FAIL})

ALLOWED_TRANSITIONS: dict[LeadStatus, frozenset[LeadStatus]] = {
    LeadStatus.WAITING_ASSIGNMENT: frozenset({LeadStatus.SCHEDULED, LeadStatus.ACCEPTED}),
    LeadStatus.SCHEDULED: frozenset({
        LeadStatus.WAITING_ASSIGNMENT,
        LeadStatus.CANCELED,
        LeadStatus.EXPIRED,
    }),
    LeadStatus.ACCEPTED: frozenset({LeadStatus.IN_PROCESS}),
    LeadStatus.IN_PROCESS: frozenset({
        LeadStatus.SOLD,
        LeadStatus.NO_SALE,
        LeadStatus.CANCELED,
        LeadStatus.RESCHEDULED,
        LeadStatus.CREDIT_FAIL,
    }),
    LeadStatus.RESCHEDULED: frozenset({LeadStatus.SCHEDULED}),
}


def is_terminal(status: LeadStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(prior: LeadStatus, new: LeadStatus) -> bool:
    """
    True when ``prior -> new`` is a legal lead status change.

    Re-writing the same status is always legal. ``waiting_assignment`` is a
    manager-override target from every non-terminal state; nothing leaves a
    terminal state.
    """
    if prior == new:
        return True
    if is_terminal(prior):
        return False
    if new == LeadStatus.WAITING_ASSIGNMENT:
        return True
    return new in ALLOWED_TRANSITIONS.get(prior, frozenset())


# ============================================================================
# DOCUMENTS
# ============================================================================

@dataclass
class Lead:
    """A customer lead as stored in the ``leads`` collection."""
    id: str
    team_id: str
    status: LeadStatus
    dispatch_type: DispatchType = DispatchType.IMMEDIATE
    assigned_closer_id: Optional[str] = None
    assigned_closer_name: Optional[str] = None
    scheduled_appointment_time: Optional[datetime] = None
    setter_verified: bool = False
    setter_id: Optional[str] = None
    customer_name: str = ""
    customer_phone: str = ""
    address: Optional[str] = None
    accepted_at: Optional[datetime] = None
    accepted_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Fields written by other parts of the product, kept on round trip
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    _TIMESTAMPS = ("scheduled_appointment_time", "accepted_at", "created_at", "updated_at")

    @property
    def counts_as_active(self) -> bool:
        """Whether this lead occupies its closer (unverified scheduled leads are soft holds)"""
        if self.status not in ACTIVE_STATUSES:
            return False
        return self.status != LeadStatus.SCHEDULED or self.setter_verified

    @property
    def is_assignable(self) -> bool:
        """waiting_assignment, or scheduled and verified by the setter"""
        if self.status == LeadStatus.WAITING_ASSIGNMENT:
            return True
        return self.status == LeadStatus.SCHEDULED and self.setter_verified

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "Lead":
        known = {f.name for f in fields(cls)} - {"extra"}
        data = {k: v for k, v in doc.items() if k in known}
        data["status"] = LeadStatus(doc["status"])
        data["dispatch_type"] = DispatchType(doc.get("dispatch_type") or DispatchType.IMMEDIATE.value)
        data["setter_verified"] = bool(doc.get("setter_verified", False))
        for name in cls._TIMESTAMPS:
            data[name] = parse_ts(doc.get(name))
        return cls(**data, extra={k: v for k, v in doc.items() if k not in known})

    def to_doc(self) -> dict[str, Any]:
        doc = dict(self.extra)
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = _ts_out(value)
            doc[f.name] = value
        return doc


@dataclass
class Closer:
    """A salesperson in a team's rotation (``closers`` collection)."""
    uid: str
    team_id: str
    name: str
    status: CloserStatus = CloserStatus.OFF_DUTY
    lineup_order: int = 0
    last_exception_timestamp: Optional[datetime] = None
    last_exception_reason: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def on_duty(self) -> bool:
        return self.status == CloserStatus.ON_DUTY

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "Closer":
        known = {f.name for f in fields(cls)} - {"extra"}
        return cls(
            uid=doc["uid"],
            team_id=doc["team_id"],
            name=doc.get("name") or "",
            status=CloserStatus(doc.get("status") or CloserStatus.OFF_DUTY.value),
            lineup_order=int(doc.get("lineup_order") or 0),
            last_exception_timestamp=parse_ts(doc.get("last_exception_timestamp")),
            last_exception_reason=doc.get("last_exception_reason"),
            extra={k: v for k, v in doc.items() if k not in known},
        )

    def to_doc(self) -> dict[str, Any]:
        doc = dict(self.extra)
        doc.update({
            "uid": self.uid,
            "team_id": self.team_id,
            "name": self.name,
            "status": self.status.value,
            "lineup_order": self.lineup_order,
            "last_exception_timestamp": _ts_out(self.last_exception_timestamp),
            "last_exception_reason": self.last_exception_reason,
        })
        return doc


@dataclass
class ActivityLogEntry:
    """Append-only audit record (``activities`` collection)"""
    type: str
    team_id: str
    lead_id: Optional[str] = None
    closer_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_doc(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "team_id": self.team_id,
            "lead_id": self.lead_id,
            "closer_id": self.closer_id,
            "timestamp": _ts_out(self.timestamp),
            "metadata": self.metadata,
        }


@dataclass
class ReminderTask:
    lead_id: str
    assigned_closer_id: str
    appointment_time: datetime
    reminder_time: datetime
    customer_name: str = ""
    address: Optional[str] = None
    processed: bool = False
    superseded: bool = False
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[str] = None

    @classmethod
    def from_doc(cls, doc: dict[str, Any], task_id: Optional[str] = None) -> "ReminderTask":
        return cls(
            id=task_id or doc.get("id"),
            lead_id=doc["lead_id"],
            assigned_closer_id=doc["assigned_closer_id"],
            appointment_time=parse_ts(doc["appointment_time"]),
            reminder_time=parse_ts(doc["reminder_time"]),
            customer_name=doc.get("customer_name") or "",
            address=doc.get("address"),
            processed=bool(doc.get("processed", False)),
            superseded=bool(doc.get("superseded", False)),
            created_at=parse_ts(doc.get("created_at")) or utcnow(),
        )

    def to_doc(self) -> dict[str, Any]:
        return {
            "lead_id": self.lead_id,
            "assigned_closer_id": self.assigned_closer_id,
            "appointment_time": _ts_out(self.appointment_time),
            "reminder_time": _ts_out(self.reminder_time),
            "customer_name": self.customer_name,
            "address": self.address,
            "processed": self.processed,
            "superseded": self.superseded,
            "created_at": _ts_out(self.created_at),
        }


@dataclass
class Alert:
    """Manager-facing alert (``notifications`` collection)"""
    type: str
    team_id: str
    message: str
    lead_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_doc(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "team_id": self.team_id,
            "lead_id": self.lead_id,
            "message": self.message,
            "created_at": _ts_out(self.created_at),
        }


@dataclass
class FunctionError:
    """Error-sink record written when a reaction fails"""
    function: str
    entity_id: str
    message: str
    timestamp: datetime = field(default_factory=utcnow)
    context: dict[str, Any] = field(default_factory=dict)

    def to_doc(self) -> dict[str, Any]:
        return {
            "function": self.function,
            "entity_id": self.entity_id,
            "message": self.message,
            "timestamp": _ts_out(self.timestamp),
            "context": self.context,
        }


@dataclass(frozen=True)
class CallerContext:
    """Authenticated identity forwarded by the auth front door"""
    uid: str
    role: Role
    team_id: Optional[str] = None

    @property
    def is_manager(self) -> bool:
        return self.role in (Role.MANAGER, Role.ADMIN)
