"""
Join and ordering definitions shared by bulk loads and point fetches.

A point fetch after a change event must return rows shaped exactly like
the bulk load, so both paths read the joins from here.
"""

from __future__ import annotations

from ..models import Collection
from ..transport.base import Join, OrderBy

FARMER_PROFILE = Join(
    alias="farmer_profile",
    table=Collection.PROFILES.value,
    local_key="farmer_id",
    constraint="scans_farmer_id_fkey",
    columns=("id", "username", "full_name", "email", "profile_picture"),
)

EXPERT_PROFILE_COLUMNS = ("id", "username", "full_name", "email")

EXPERT_PROFILE = Join(
    alias="expert_profile",
    table=Collection.PROFILES.value,
    local_key="expert_id",
    constraint="validation_history_expert_id_fkey",
    columns=EXPERT_PROFILE_COLUMNS,
)

VALIDATED_SCAN = Join(
    alias="scan",
    table=Collection.SCANS.value,
    local_key="scan_id",
    constraint="validation_history_scan_id_fkey",
    joins=(FARMER_PROFILE,),
)

SCAN_JOINS = (FARMER_PROFILE,)
VALIDATION_JOINS = (EXPERT_PROFILE, VALIDATED_SCAN)

SCAN_ORDER = OrderBy("created_at", descending=True)
VALIDATION_ORDER = OrderBy("validated_at", descending=True)

JOINS_BY_COLLECTION = {
    Collection.SCANS.value: SCAN_JOINS,
    Collection.VALIDATIONS.value: VALIDATION_JOINS,
}
