"""Queue data models."""
import json
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional, Tuple

from offline_sync.errors import ValidationError


class OperationType(str, Enum):
    """Kinds of mutation the queue knows how to replay."""

    UPDATE_PROGRESS = "updateProgress"
    ADD_TAG = "addTag"
    REMOVE_TAG = "removeTag"


class EntryState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    DEAD_LETTERED = "dead_lettered"


TERMINAL_STATES = {EntryState.DONE, EntryState.DEAD_LETTERED}

LogicalKey = Tuple[str, str, str]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class QueueEntry:
    """A single pending mutation in the durable log."""

    id: str
    type: OperationType
    payload: Dict[str, Any]
    user_id: str
    created_at: datetime
    retry_count: int = 0
    state: EntryState = EntryState.PENDING
    next_attempt_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    dead_lettered_at: Optional[datetime] = None

    @classmethod
    def create(cls, op_type, payload: Dict[str, Any], user_id: str, now: Optional[datetime] = None):
        """Validate the request and build a fresh pending entry with a new id."""
        op_type = parse_operation_type(op_type)
        validate_payload(op_type, payload, user_id)
        return cls(
            id=str(uuid.uuid4()),
            type=op_type,
            payload=dict(payload),
            user_id=user_id,
            created_at=now or utc_now(),
        )

    @property
    def item_id(self) -> str:
        return self.payload["itemId"]

    @property
    def logical_key(self) -> LogicalKey:
        """(user_id, type, itemId): identifies the real-world mutation."""
        return (self.user_id, self.type.value, self.item_id)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def is_eligible(self, now: datetime) -> bool:
        """Pending and past its backoff delay."""
        if self.state != EntryState.PENDING:
            return False
        return self.next_attempt_at is None or self.next_attempt_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "payload": self.payload,
            "userId": self.user_id,
            "createdAt": _format_time(self.created_at),
            "retryCount": self.retry_count,
            "state": self.state.value,
            "nextAttemptAt": _format_time(self.next_attempt_at),
            "claimedAt": _format_time(self.claimed_at),
            "lastError": self.last_error,
            "deadLetteredAt": _format_time(self.dead_lettered_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueEntry":
        return cls(
            id=data["id"],
            type=OperationType(data["type"]),
            payload=data["payload"],
            user_id=data["userId"],
            created_at=_parse_time(data["createdAt"]),
            retry_count=data.get("retryCount", 0),
            state=EntryState(data.get("state", EntryState.PENDING.value)),
            next_attempt_at=_parse_time(data.get("nextAttemptAt")),
            claimed_at=_parse_time(data.get("claimedAt")),
            last_error=data.get("lastError"),
            dead_lettered_at=_parse_time(data.get("deadLetteredAt")),
        )


@dataclass
class DrainSummary:
    """Outcome counts of one drain pass. For observability only."""

    succeeded: int = 0
    retried: int = 0
    dead_lettered: int = 0
    already_applied: int = 0
    # Claims handed back because no worker picked them up in time
    deferred: int = 0
    skipped: bool = False

    @property
    def attempted(self) -> int:
        return self.succeeded + self.retried + self.dead_lettered + self.already_applied

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def parse_operation_type(value) -> OperationType:
    if isinstance(value, OperationType):
        return value
    try:
        return OperationType(value)
    except ValueError:
        allowed = ", ".join(t.value for t in OperationType)
        raise ValidationError(f"Unknown operation type {value!r} (expected one of: {allowed})")


def _require_str(payload: Dict[str, Any], name: str) -> None:
    value = payload.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"payload.{name} must be a non-empty string")


def validate_payload(op_type: OperationType, payload: Dict[str, Any], user_id: str) -> None:
    """Check the payload shape required by ``op_type``."""
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError("userId must be a non-empty string")
    if not isinstance(payload, dict):
        raise ValidationError(f"payload must be a mapping, got {type(payload).__name__}")

    _require_str(payload, "itemId")

    owner = payload.get("userId")
    if owner is not None and owner != user_id:
        raise ValidationError(f"payload.userId {owner!r} does not match acting user {user_id!r}")

    if op_type == OperationType.UPDATE_PROGRESS:
        fields = set(payload) - {"itemId", "userId"}
        if not fields:
            raise ValidationError("updateProgress payload carries no progress fields")
        if "data" in payload and not isinstance(payload["data"], dict):
            raise ValidationError("payload.data must be a mapping")
    else:
        if not payload.get("tagId") and not payload.get("tag"):
            raise ValidationError(f"{op_type.value} payload requires tagId or tag")
        _require_str(payload, "tagId" if payload.get("tagId") else "tag")

    try:
        json.dumps(payload)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"payload is not JSON-serialisable: {e}")
