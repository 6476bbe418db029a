"""User profile and segment accessor backed by Supabase."""

import logging
from typing import Any, Protocol

import httpx
from postgrest.exceptions import APIError

from lifecycle_mail import supabase_client as db
from lifecycle_mail.errors import PersistenceError
from lifecycle_mail.models import PROFILE_COMPLETENESS, Recipient

logger = logging.getLogger(__name__)

PROFILES = "user_profiles"

DEFAULT_SEGMENTS = frozenset({"all_users"})

# Fields counted towards profile completeness
REQUIRED_PROFILE_FIELDS = (
    "full_name", "age", "gender", "height_cm", "weight_kg",
    "activity_level", "primary_goal", "dietary_preferences",
)


class ProfileAccessor(Protocol):
    def get_user_segments(self, user_id: str) -> set[str]: ...
    def get_profile_field(self, user_id: str, field: str) -> Any: ...
    def get_subscription_status(self, user_id: str) -> str | None: ...
    def get_recipient(self, user_id: str) -> Recipient | None: ...


def profile_completeness(profile: dict) -> int:
    """Percentage (0-100) of required profile fields that are filled in."""
    filled = 0
    for name in REQUIRED_PROFILE_FIELDS:
        value = profile.get(name)
        if isinstance(value, (list, tuple, set)):
            filled += 1 if value else 0
        elif value not in (None, ""):
            filled += 1
    return round(filled / len(REQUIRED_PROFILE_FIELDS) * 100)


class SupabaseProfiles:
    """Reads user_profiles and the get_user_segments RPC."""

    def get_user_segments(self, user_id: str) -> set[str]:
        try:
            data = db.rpc("get_user_segments", {"p_user_id": user_id})
        except APIError as e:
            raise PersistenceError(f"segments for {user_id}: {e.message}") from e
        except httpx.HTTPError as e:
            raise PersistenceError(f"segments for {user_id}: {e}") from e
        segments = set(data or ())
        return segments or set(DEFAULT_SEGMENTS)

    def _profile(self, user_id: str) -> dict | None:
        try:
            return db.select_one(PROFILES, match={"id": user_id})
        except APIError as e:
            raise PersistenceError(f"profile for {user_id}: {e.message}") from e
        except httpx.HTTPError as e:
            raise PersistenceError(f"profile for {user_id}: {e}") from e

    def get_profile_field(self, user_id: str, field: str) -> Any:
        profile = self._profile(user_id)
        if profile is None:
            return None
        if field == PROFILE_COMPLETENESS:
            return profile_completeness(profile)
        return profile.get(field)

    def get_subscription_status(self, user_id: str) -> str | None:
        profile = self._profile(user_id)
        return profile.get("subscription_status") if profile else None

    def get_recipient(self, user_id: str) -> Recipient | None:
        profile = self._profile(user_id)
        if not profile or not profile.get("email"):
            return None
        return Recipient(email=profile["email"], full_name=profile.get("full_name") or "")
