"""
Clerk-backed profile store and versioned updates.
"""
import json

import httpx
import pytest

from optiroute.core.errors import ConfigurationError, ConflictError, NotFoundError, UpstreamProviderError
from optiroute.features.identity.clerk_client import ClerkClient, full_name, primary_email
from optiroute.features.identity.profile_store import ClerkProfileStore, VersionConflictError, update_profile
from optiroute.models.subscription import Active, UserSubscriptionProfile
from optiroute.tests.mocks import InMemoryProfileStore, clerk_user

USER = "user_test_123"


class ClerkBackend:
    """Minimal in-memory Clerk Backend API served over httpx.MockTransport."""

    def __init__(self, metadata=None):
        self.user = clerk_user(USER, metadata=metadata)
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not request.url.path.startswith(f"/v1/users/{USER}"):
            return httpx.Response(404, json={"errors": [{"message": "not found"}]})
        if request.method == "GET":
            return httpx.Response(200, json=self.user)
        if request.method == "PATCH":
            patch = json.loads(request.content)["public_metadata"]
            merged = dict(self.user["public_metadata"])
            for key, value in patch.items():
                if value is None:
                    merged.pop(key, None)
                else:
                    merged[key] = value
            self.user["public_metadata"] = merged
            return httpx.Response(200, json=self.user)
        return httpx.Response(405)


@pytest.fixture
def backend():
    return ClerkBackend({"stripeCustomerId": "cus_1", "profileVersion": 3})


@pytest.fixture
def clerk(backend):
    http = httpx.AsyncClient(transport=httpx.MockTransport(backend.handler))
    return ClerkClient("sk_clerk_test", http)


def test_primary_email_prefers_primary_id():
    user = {
        "primary_email_address_id": "idn_2",
        "email_addresses": [
            {"id": "idn_1", "email_address": "old@example.com"},
            {"id": "idn_2", "email_address": "new@example.com"},
        ],
    }
    assert primary_email(user) == "new@example.com"
    assert primary_email({"email_addresses": [{"id": "x", "email_address": "only@example.com"}]}) == "only@example.com"
    assert primary_email({}) is None


def test_full_name():
    assert full_name({"first_name": "Ada", "last_name": None}) == "Ada"
    assert full_name({}) is None


@pytest.mark.asyncio
async def test_load_reads_public_metadata(clerk, backend):
    profile = await ClerkProfileStore(clerk).load(USER)

    assert profile.customer_id == "cus_1"
    assert profile.version == 3
    assert backend.requests[0].headers["Authorization"] == "Bearer sk_clerk_test"


@pytest.mark.asyncio
async def test_save_bumps_version_and_writes_metadata(clerk, backend):
    store = ClerkProfileStore(clerk)
    profile = (await store.load(USER)).with_state(
        Active(plan_id="price_pro", subscription_id="sub_1", cycle_start=10, used=0)
    )

    stored = await store.save(USER, profile, expected_version=3)

    assert stored.version == 4
    metadata = backend.user["public_metadata"]
    assert metadata["profileVersion"] == 4
    assert metadata["stripePlanId"] == "price_pro"
    assert metadata["stripeCustomerId"] == "cus_1"
    assert backend.requests[-1].url.path == f"/v1/users/{USER}/metadata"


@pytest.mark.asyncio
async def test_save_refuses_stale_version(clerk, backend):
    store = ClerkProfileStore(clerk)

    with pytest.raises(VersionConflictError) as exc:
        await store.save(USER, UserSubscriptionProfile(), expected_version=2)

    assert (exc.value.expected, exc.value.actual) == (2, 3)
    assert all(r.method == "GET" for r in backend.requests)


@pytest.mark.asyncio
async def test_unknown_user_is_not_found(clerk):
    with pytest.raises(NotFoundError):
        await clerk.get_user("user_missing")


@pytest.mark.asyncio
async def test_clerk_error_keeps_message():
    def handler(request):
        return httpx.Response(422, json={"errors": [{"message": "bad", "long_message": "metadata too large"}]})

    client = ClerkClient("sk", httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    with pytest.raises(UpstreamProviderError) as exc:
        await client.update_public_metadata(USER, {"a": 1})
    assert exc.value.details == "metadata too large"
    assert exc.value.provider_status == 422


@pytest.mark.asyncio
async def test_missing_secret_key_is_configuration_error():
    client = ClerkClient(None, httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))))
    with pytest.raises(ConfigurationError):
        await client.get_user(USER)


@pytest.mark.asyncio
async def test_update_profile_noop_skips_write():
    store = InMemoryProfileStore()

    profile = await update_profile(store, USER, lambda p: p)

    assert profile.version == 0
    assert store.saves == 0


@pytest.mark.asyncio
async def test_update_profile_retries_on_conflict(caplog):
    store = InMemoryProfileStore()
    store.concurrent_writes = 2
    calls = []

    def mutate(profile):
        calls.append(profile.version)
        return profile.model_copy(update={"customer_id": "cus_9"})

    with caplog.at_level("WARNING", logger="optiroute"):
        profile = await update_profile(store, USER, mutate)

    assert calls == [0, 1, 2]
    assert profile.customer_id == "cus_9"
    assert profile.version == 3
    assert sum(r.message == "profile.version_conflict" for r in caplog.records) == 2


@pytest.mark.asyncio
async def test_update_profile_raises_conflict_after_max_attempts():
    store = InMemoryProfileStore()
    store.concurrent_writes = 5

    with pytest.raises(ConflictError):
        await update_profile(store, USER, lambda p: p.model_copy(update={"customer_id": "cus_9"}), max_attempts=2)
    assert store.saves == 0
