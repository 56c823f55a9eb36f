"""
Shared fixtures for the review sync tests.

Row factories build remote-store rows shaped like the hosted tables, so the
same rows can seed the in-memory backend or be parsed directly.
"""

from datetime import datetime, timedelta, timezone

import pytest

from portal.review_sync.sync import SessionGate
from portal.review_sync.transport import InMemoryBackend

EXPERT_ID = "expert-1"
FARMER_ID = "farmer-1"
BASE_TIME = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


def _at(minutes: int) -> str:
    return (BASE_TIME + timedelta(minutes=minutes)).isoformat()


@pytest.fixture
def make_profile():
    """Factory for ``profiles`` rows."""

    def factory(profile_id, full_name=None, **extra):
        row = {
            "id": profile_id,
            "username": profile_id,
            "full_name": full_name if full_name is not None else f"Name of {profile_id}",
            "email": f"{profile_id}@example.com",
        }
        row.update(extra)
        return row

    return factory


@pytest.fixture
def make_scan():
    """Factory for ``scans`` rows; ``created_at`` grows with the id."""

    def factory(scan_id, ai_prediction="Downy Mildew", status="Pending Validation", **extra):
        row = {
            "id": scan_id,
            "farmer_id": FARMER_ID,
            "scan_type": "leaf_disease",
            "ai_prediction": ai_prediction,
            "status": status,
            "image_url": f"https://img.example.com/{scan_id}.jpg",
            "confidence": 0.91,
            "created_at": _at(scan_id),
            "updated_at": _at(scan_id),
        }
        row.update(extra)
        return row

    return factory


@pytest.fixture
def make_validation():
    """Factory for ``validation_history`` rows."""

    def factory(
        validation_id,
        scan_id,
        expert_id=EXPERT_ID,
        status="Validated",
        expert_validation="Downy Mildew",
        **extra,
    ):
        row = {
            "id": validation_id,
            "scan_id": scan_id,
            "expert_id": expert_id,
            "ai_prediction": "Downy Mildew",
            "expert_validation": expert_validation,
            "status": status,
            "validated_at": _at(1000 + (validation_id or 0)),
            "expert_comment": None,
        }
        row.update(extra)
        return row

    return factory


@pytest.fixture
def backend(make_profile):
    """In-memory remote store holding the expert's and a farmer's profile."""
    b = InMemoryBackend()
    b.seed("profiles", [make_profile(EXPERT_ID, "Dr. Expert"), make_profile(FARMER_ID, "Farmer Joe")])
    return b


@pytest.fixture
def gate():
    """Session gate signed in as the test expert."""
    return SessionGate(EXPERT_ID, access_token="token-1")
