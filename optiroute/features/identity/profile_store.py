"""
optiroute/features/identity/profile_store.py

Versioned read-modify-write access to UserSubscriptionProfile.

Every write carries the version it was derived from. The store re-reads the
profile right before writing and refuses when the version moved; the caller
(`update_profile`) then re-runs its mutation against the fresh profile.
"""

import logging
from typing import Callable, Protocol

from optiroute.core.errors import ConflictError
from optiroute.features.identity.clerk_client import ClerkClient
from optiroute.models.subscription import UserSubscriptionProfile

logger = logging.getLogger("optiroute")

MAX_WRITE_ATTEMPTS = 3


class VersionConflictError(Exception):
    """Stored profile version differs from the one the write was based on."""

    def __init__(self, user_id: str, expected: int, actual: int):
        super().__init__(f"profile {user_id}: expected version {expected}, found {actual}")
        self.user_id = user_id
        self.expected = expected
        self.actual = actual


class ProfileStore(Protocol):
    async def load(self, user_id: str) -> UserSubscriptionProfile: ...

    async def save(
        self, user_id: str, profile: UserSubscriptionProfile, expected_version: int
    ) -> UserSubscriptionProfile: ...


class ClerkProfileStore:
    """Profile persisted as Clerk user public metadata."""

    def __init__(self, clerk: ClerkClient):
        self.clerk = clerk

    async def load(self, user_id: str) -> UserSubscriptionProfile:
        user = await self.clerk.get_user(user_id)
        return UserSubscriptionProfile.from_metadata(user.get("public_metadata"))

    async def save(
        self, user_id: str, profile: UserSubscriptionProfile, expected_version: int
    ) -> UserSubscriptionProfile:
        current = await self.load(user_id)
        if current.version != expected_version:
            raise VersionConflictError(user_id, expected_version, current.version)

        stored = profile.model_copy(update={"version": expected_version + 1})
        await self.clerk.update_public_metadata(user_id, stored.to_metadata())
        return stored


async def update_profile(
    store: ProfileStore,
    user_id: str,
    mutate: Callable[[UserSubscriptionProfile], UserSubscriptionProfile],
    max_attempts: int = MAX_WRITE_ATTEMPTS,
) -> UserSubscriptionProfile:
    """
    Apply `mutate` to the latest profile and persist it.

    `mutate` must be pure: it may run once per attempt.

    Returns:
        The stored profile (unchanged profile if `mutate` was a no-op)

    Raises:
        ConflictError: the version kept moving for `max_attempts` attempts
    """
    for attempt in range(1, max_attempts + 1):
        profile = await store.load(user_id)
        updated = mutate(profile)
        if updated == profile:
            return profile
        try:
            return await store.save(user_id, updated, expected_version=profile.version)
        except VersionConflictError as e:
            logger.warning(
                "profile.version_conflict",
                extra={"user_id": user_id, "attempt": attempt, "expected": e.expected, "actual": e.actual},
            )

    raise ConflictError("Your account was updated concurrently. Please retry.")
