"""
Record types held by the review sync cache.

Rows arrive from the remote store as JSON dictionaries, optionally with
embedded (joined) profile and scan rows. The dataclasses here are the
parsed, immutable form the RecordStore holds.

Invariants:
    - Records are frozen; a change is always a new record replacing the old
    - Every record has a stable identity (``id``) within its collection
    - Timestamps are timezone-aware (naive values are taken as UTC)

How to change safely:
    - New remote columns go into ``from_row`` with a default so old rows parse
    - Keep ``to_row`` symmetric with ``from_row`` for the in-memory backend
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any


class Collection(str, Enum):
    """Remote tables the core tracks."""

    SCANS = "scans"
    VALIDATIONS = "validation_history"
    PROFILES = "profiles"


class ScanStatus(str, Enum):
    """Lifecycle status of a scan."""

    PENDING = "Pending Validation"
    VALIDATED = "Validated"
    CORRECTED = "Corrected"


class ScanType(str, Enum):
    """The two kinds of submitted scans."""

    LEAF_DISEASE = "leaf_disease"
    FRUIT_MATURITY = "fruit_maturity"


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp from the store; naive values are UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ProfileRef:
    """Denormalized profile fields joined onto scans and validations.

    Attributes:
        id: Profile identifier (auth user id)
        username: Handle
        full_name: Display name
        email: Contact address
        profile_picture: Avatar URL (farmers only)
    """

    id: str
    username: str | None = None
    full_name: str | None = None
    email: str | None = None
    profile_picture: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any] | None) -> ProfileRef | None:
        if not row or not row.get("id"):
            return None
        return cls(
            id=str(row["id"]),
            username=row.get("username"),
            full_name=row.get("full_name"),
            email=row.get("email"),
            profile_picture=row.get("profile_picture"),
        )

    def to_row(self) -> dict[str, Any]:
        row = {
            "id": self.id,
            "username": self.username,
            "full_name": self.full_name,
            "email": self.email,
        }
        if self.profile_picture is not None:
            row["profile_picture"] = self.profile_picture
        return row

    @property
    def display_name(self) -> str:
        return self.full_name or self.username or self.email or "Unknown"


@dataclass(frozen=True)
class Scan:
    """A submitted item awaiting or having received expert review."""

    id: int
    farmer_id: str | None
    scan_type: ScanType
    ai_prediction: str
    status: ScanStatus = ScanStatus.PENDING
    image_url: str | None = None
    confidence: float | str | None = None
    solution: str | None = None
    recommended_products: str | None = None
    expert_comment: str | None = None
    expert_validation: str | None = None
    scan_uuid: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    farmer_profile: ProfileRef | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Scan:
        """Create a Scan from a store row.

        Args:
            row: Row dictionary, optionally with an embedded ``farmer_profile``

        Returns:
            Scan instance

        Raises:
            ValueError: If ``id`` is missing or a status/type is unknown
        """
        if row.get("id") is None:
            raise ValueError("Scan row is missing 'id'")
        return cls(
            id=int(row["id"]),
            farmer_id=row.get("farmer_id"),
            scan_type=ScanType(row.get("scan_type") or ScanType.LEAF_DISEASE.value),
            ai_prediction=row.get("ai_prediction") or "",
            status=ScanStatus(row.get("status") or ScanStatus.PENDING.value),
            image_url=row.get("image_url"),
            confidence=row.get("confidence"),
            solution=row.get("solution"),
            recommended_products=row.get("recommended_products"),
            expert_comment=row.get("expert_comment"),
            expert_validation=row.get("expert_validation"),
            scan_uuid=row.get("scan_uuid"),
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
            farmer_profile=ProfileRef.from_row(row.get("farmer_profile")),
        )

    def to_row(self) -> dict[str, Any]:
        """Plain column values (no embedded profile)."""
        return {
            "id": self.id,
            "farmer_id": self.farmer_id,
            "scan_type": self.scan_type.value,
            "ai_prediction": self.ai_prediction,
            "status": self.status.value,
            "image_url": self.image_url,
            "confidence": self.confidence,
            "solution": self.solution,
            "recommended_products": self.recommended_products,
            "expert_comment": self.expert_comment,
            "expert_validation": self.expert_validation,
            "scan_uuid": self.scan_uuid,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @property
    def is_pending(self) -> bool:
        return self.status is ScanStatus.PENDING

    def created_on(self) -> date | None:
        return self.created_at.date() if self.created_at else None

    def with_outcome(self, status: ScanStatus, expert_validation: str | None) -> Scan:
        """Copy of this scan carrying a validation outcome."""
        return replace(self, status=status, expert_validation=expert_validation)

    def sort_key(self) -> tuple[datetime, int]:
        return (self.created_at or _EPOCH, self.id)


@dataclass(frozen=True)
class ValidationRecord:
    """An audit entry produced when an expert acts on a scan."""

    id: int
    scan_id: int
    expert_id: str
    ai_prediction: str
    expert_validation: str | None
    status: ScanStatus
    validated_at: datetime | None = None
    expert_comment: str | None = None
    expert_profile: ProfileRef | None = None
    scan: Scan | None = field(default=None, compare=False)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ValidationRecord:
        """Create a ValidationRecord from a ``validation_history`` row.

        Raises:
            ValueError: If required columns are missing or the status is not
                a terminal status
        """
        missing = [c for c in ("id", "scan_id", "expert_id") if row.get(c) is None]
        if missing:
            raise ValueError(f"Validation row is missing fields: {missing}")
        status = ScanStatus(row.get("status") or ScanStatus.VALIDATED.value)
        if status is ScanStatus.PENDING:
            raise ValueError("Validation status must be Validated or Corrected")
        scan_row = row.get("scan")
        return cls(
            id=int(row["id"]),
            scan_id=int(row["scan_id"]),
            expert_id=str(row["expert_id"]),
            ai_prediction=row.get("ai_prediction") or "",
            expert_validation=row.get("expert_validation"),
            status=status,
            validated_at=parse_timestamp(row.get("validated_at")),
            expert_comment=row.get("expert_comment"),
            expert_profile=ProfileRef.from_row(row.get("expert_profile")),
            scan=Scan.from_row(scan_row) if scan_row else None,
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "scan_id": self.scan_id,
            "expert_id": self.expert_id,
            "ai_prediction": self.ai_prediction,
            "expert_validation": self.expert_validation,
            "status": self.status.value,
            "validated_at": format_timestamp(self.validated_at),
            "expert_comment": self.expert_comment,
        }

    @property
    def needs_expert_profile(self) -> bool:
        """Expert join came back empty although the reference exists."""
        return bool(self.expert_id) and not (
            self.expert_profile and self.expert_profile.full_name
        )

    def with_expert_profile(self, profile: ProfileRef) -> ValidationRecord:
        return replace(self, expert_profile=profile)

    def sort_key(self) -> tuple[datetime, int]:
        return (self.validated_at or _EPOCH, self.id)


Record = Scan | ValidationRecord
