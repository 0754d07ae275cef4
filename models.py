from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, field_validator


# -----------------------------
# Shared time helpers
# -----------------------------
def parse_timestamp(ts: str) -> datetime:
    """
    Parse an ISO-8601 date or date-time into an aware UTC datetime.
    Accepts 'Z' suffix by converting it to '+00:00'. Values without an
    offset are read as UTC.
    """
    if not isinstance(ts, str) or not ts.strip():
        raise ValueError("timestamp must be a non-empty string")

    s = ts.strip()
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None or dt.utcoffset() is None:
        dt = dt.replace(tzinfo=timezone.utc)
    try:
        return to_utc(dt)
    except OverflowError:
        # e.g. 0001-01-01T00:00+01:00 has no UTC representation
        raise ValueError(f"timestamp out of range: {ts!r}")


def try_parse_timestamp(ts: Optional[str]) -> Optional[datetime]:
    if ts is None:
        return None
    try:
        return parse_timestamp(ts)
    except (TypeError, ValueError):
        return None


def to_utc(dt: datetime) -> datetime:
    # dt is aware
    return dt.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def intervals_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """
    Half-open interval overlap: [start, end)
    Overlap iff a_start < b_end AND b_start < a_end.
    Back-to-back is allowed (end == other.start is NOT overlap).
    """
    return a_start < b_end and b_start < a_end


def utc_iso_z(dt: datetime) -> str:
    # dt is aware, UTC
    return to_utc(dt).isoformat().replace("+00:00", "Z")


def hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600.0


def normalise_email(value: Optional[str]) -> Optional[str]:
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip().lower()


def clean_strings(values: Optional[Sequence[Any]]) -> Tuple[str, ...]:
    """Drop non-string and blank entries, keeping order."""
    if not values:
        return ()
    return tuple(v for v in values if isinstance(v, str) and v.strip())


# -----------------------------
# Domain model
# -----------------------------
class ResourceType(str, Enum):
    MEETING_ROOM = "meeting_room"
    LAB = "lab"
    EQUIPMENT = "equipment"
    OTHER = "other"


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


# Statuses that hold a slot on the resource calendar
BLOCKING_STATUSES: FrozenSet[BookingStatus] = frozenset({BookingStatus.PENDING, BookingStatus.CONFIRMED})

# Statuses that count as used time in utilisation analytics
UTILISED_STATUSES: FrozenSet[BookingStatus] = frozenset({BookingStatus.CONFIRMED, BookingStatus.COMPLETED})


@dataclass(frozen=True)
class Actor:
    id: str
    name: Optional[str] = None
    email: Optional[str] = None

    @property
    def normalised_email(self) -> Optional[str]:
        return normalise_email(self.email)


@dataclass(frozen=True)
class AvailabilitySlot:
    day: str
    start_time: str  # "HH:MM"
    end_time: str    # "HH:MM"


@dataclass(frozen=True)
class ApprovalPolicy:
    requires_approval: bool = False
    approver_emails: FrozenSet[str] = frozenset()
    auto_approve_duration_hours: Optional[float] = None
    auto_approve_emails: FrozenSet[str] = frozenset()

    @classmethod
    def build(
        cls,
        requires_approval: bool = False,
        approver_emails: Optional[Sequence[str]] = None,
        auto_approve_duration_hours: Optional[float] = None,
        auto_approve_emails: Optional[Sequence[str]] = None,
    ) -> "ApprovalPolicy":
        """Create a policy with trimmed, lower-cased email sets."""
        return cls(
            requires_approval=bool(requires_approval),
            approver_emails=frozenset(
                e for e in (normalise_email(v) for v in approver_emails or ()) if e
            ),
            auto_approve_duration_hours=auto_approve_duration_hours,
            auto_approve_emails=frozenset(
                e for e in (normalise_email(v) for v in auto_approve_emails or ()) if e
            ),
        )


@dataclass(frozen=True)
class FacilityResource:
    id: str
    type: ResourceType
    name: str
    created_at: datetime
    updated_at: datetime
    location: Optional[str] = None
    capacity: Optional[int] = None
    description: Optional[str] = None
    tags: FrozenSet[str] = frozenset()
    availability: Tuple[AvailabilitySlot, ...] = ()
    approval_policy: Optional[ApprovalPolicy] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ApprovalDecision:
    decision: str  # "auto-approved" | "approved" | "rejected"
    decided_at: datetime
    actor_id: str
    actor_name: Optional[str] = None
    actor_email: Optional[str] = None
    reason: Optional[str] = None
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "decision": self.decision,
            "decided_at": utc_iso_z(self.decided_at),
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "actor_email": self.actor_email,
        }
        if self.reason is not None:
            data["reason"] = self.reason
        if self.note is not None:
            data["note"] = self.note
        return data


@dataclass(frozen=True)
class ApprovalState:
    status: ApprovalStatus
    requested_by: Actor
    requested_at: datetime
    approvers: Tuple[str, ...] = ()
    auto_approved: bool = False
    history: Tuple[ApprovalDecision, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "requested_by": {
                "id": self.requested_by.id,
                "name": self.requested_by.name,
                "email": self.requested_by.email,
            },
            "requested_at": utc_iso_z(self.requested_at),
            "approvers": list(self.approvers),
            "auto_approved": self.auto_approved,
            "history": [entry.to_dict() for entry in self.history],
        }


@dataclass(frozen=True)
class CancellationRecord:
    actor_id: str
    cancelled_at: datetime
    reason: Optional[str] = None
    actor_name: Optional[str] = None
    actor_email: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "actor_email": self.actor_email,
            "cancelled_at": utc_iso_z(self.cancelled_at),
        }


# Metadata keys written by the booking engine itself
RESERVED_METADATA_KEYS = frozenset({"approval", "cancellation"})


@dataclass(frozen=True)
class BookingMetadata:
    approval: Optional[ApprovalState] = None
    cancellation: Optional[CancellationRecord] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_caller(cls, metadata: Optional[Dict[str, Any]]) -> "BookingMetadata":
        """Keep caller-supplied keys, dropping the engine-owned sub-records."""
        extra = {k: v for k, v in (metadata or {}).items() if k not in RESERVED_METADATA_KEYS}
        return cls(extra=extra)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        if self.approval is not None:
            data["approval"] = self.approval.to_dict()
        if self.cancellation is not None:
            data["cancellation"] = self.cancellation.to_dict()
        return data


@dataclass(frozen=True)
class FacilityBooking:
    id: str
    resource_id: str
    title: str
    start_time: datetime  # aware, UTC
    end_time: datetime    # aware, UTC
    status: BookingStatus
    created_by: str
    created_at: datetime
    updated_at: datetime
    description: Optional[str] = None
    created_by_name: Optional[str] = None
    created_by_email: Optional[str] = None
    participants: Tuple[str, ...] = ()
    metadata: BookingMetadata = field(default_factory=BookingMetadata)


# -----------------------------
# Engine requests
# -----------------------------
@dataclass(frozen=True)
class BookingRequest:
    resource_id: str
    title: str
    start_time: str
    end_time: str
    actor: Actor
    description: Optional[str] = None
    participants: Optional[Sequence[str]] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ReviewRequest:
    booking_id: str
    decision: str  # "approve" | "reject"
    actor: Actor
    note: Optional[str] = None


@dataclass(frozen=True)
class CancellationRequest:
    booking_id: str
    actor: Actor
    reason: Optional[str] = None


@dataclass(frozen=True)
class BookingFilters:
    resource_id: Optional[str] = None
    status: Optional[Sequence[BookingStatus]] = None
    start: Optional[str] = None
    end: Optional[str] = None
    limit: Optional[int] = None


# -----------------------------
# API models (transport layer)
# -----------------------------
class AvailabilitySlotIn(BaseModel):
    day: str
    start_time: str
    end_time: str


class ApprovalPolicyIn(BaseModel):
    requires_approval: bool = False
    approver_emails: List[str] = Field(default_factory=list)
    auto_approve_duration_hours: Optional[float] = Field(None, ge=0)
    auto_approve_emails: List[str] = Field(default_factory=list)


class ResourcePayload(BaseModel):
    id: Optional[str] = None
    type: str = ResourceType.OTHER.value
    name: str = ""
    location: Optional[str] = None
    capacity: Optional[int] = Field(None, ge=0)
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    availability: List[AvailabilitySlotIn] = Field(default_factory=list)
    approval_policy: Optional[ApprovalPolicyIn] = None
    metadata: Optional[Dict[str, Any]] = None


class CreateBookingIn(BaseModel):
    resource_id: str = Field(..., min_length=1)
    title: str = ""
    description: Optional[str] = None
    start_time: str
    end_time: str
    participants: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None


class UpdateBookingIn(BaseModel):
    action: Optional[str] = None
    note: Optional[str] = None
    reason: Optional[str] = None

    @field_validator("action")
    @classmethod
    def must_be_known_action(cls, v: Optional[str]) -> Optional[str]:
        # "cancel" or no action cancels the booking.
        if v is not None and v not in ("approve", "reject", "cancel"):
            raise ValueError("action must be one of approve, reject, cancel")
        return v


class ApprovalPolicyOut(BaseModel):
    requires_approval: bool
    approver_emails: List[str]
    auto_approve_duration_hours: Optional[float] = None
    auto_approve_emails: List[str]


class ResourceOut(BaseModel):
    id: str
    type: ResourceType
    name: str
    location: Optional[str] = None
    capacity: Optional[int] = None
    description: Optional[str] = None
    tags: List[str]
    availability: List[AvailabilitySlotIn]
    approval_policy: Optional[ApprovalPolicyOut] = None
    metadata: Dict[str, Any]
    created_at: str
    updated_at: str

    @classmethod
    def from_domain(cls, r: FacilityResource) -> "ResourceOut":
        policy = None
        if r.approval_policy is not None:
            policy = ApprovalPolicyOut(
                requires_approval=r.approval_policy.requires_approval,
                approver_emails=sorted(r.approval_policy.approver_emails),
                auto_approve_duration_hours=r.approval_policy.auto_approve_duration_hours,
                auto_approve_emails=sorted(r.approval_policy.auto_approve_emails),
            )
        return cls(
            id=r.id,
            type=r.type,
            name=r.name,
            location=r.location,
            capacity=r.capacity,
            description=r.description,
            tags=sorted(r.tags),
            availability=[
                AvailabilitySlotIn(day=s.day, start_time=s.start_time, end_time=s.end_time)
                for s in r.availability
            ],
            approval_policy=policy,
            metadata=dict(r.metadata),
            created_at=utc_iso_z(r.created_at),
            updated_at=utc_iso_z(r.updated_at),
        )


class BookingOut(BaseModel):
    id: str
    resource_id: str
    title: str
    description: Optional[str] = None
    start_time: str  # ISO-8601, UTC with Z
    end_time: str
    status: BookingStatus
    created_by: str
    created_by_name: Optional[str] = None
    created_by_email: Optional[str] = None
    participants: List[str]
    metadata: Dict[str, Any]
    created_at: str
    updated_at: str

    @classmethod
    def from_domain(cls, b: FacilityBooking) -> "BookingOut":
        return cls(
            id=b.id,
            resource_id=b.resource_id,
            title=b.title,
            description=b.description,
            start_time=utc_iso_z(b.start_time),
            end_time=utc_iso_z(b.end_time),
            status=b.status,
            created_by=b.created_by,
            created_by_name=b.created_by_name,
            created_by_email=b.created_by_email,
            participants=list(b.participants),
            metadata=b.metadata.to_dict(),
            created_at=utc_iso_z(b.created_at),
            updated_at=utc_iso_z(b.updated_at),
        )
