"""
Tests for the recurring reward cycle.
"""

import json
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient

from referrals.api import create_app
from referrals.config import Settings
from referrals.models import ReferralStatus
from referrals.scheduler import (
    DispatchError,
    HttpDispatcher,
    RewardScheduler,
    ServiceDispatcher,
    build_scheduler,
)
from referrals.service import ReferralRewardService
from referrals.storage import InMemoryStorage, StorageError


SERVICE_KEY = "test-service-role-key"
REWARD_URL = "http://rewards.internal/reward-referrals"


def seeded_store():
    store = InMemoryStorage()
    store.add_referral("referrer-a", "referred-1")
    store.add_referral("referrer-a", "referred-2", status=ReferralStatus.QUALIFIED)
    store.add_referral("referrer-b", "referred-3")
    store.add_referral("referrer-c", "referred-4", status=ReferralStatus.REWARDED)
    store.add_deposit("referred-1", 100000)
    store.add_deposit("referred-2", 150000)
    store.add_deposit("referred-3", 500)
    return store


class FailingDispatcher:
    def __init__(self, failing):
        self.failing = set(failing)
        self.seen = []

    def dispatch(self, referrer_id):
        self.seen.append(referrer_id)
        if referrer_id in self.failing:
            raise DispatchError("endpoint unavailable")
        return 1


class TestRewardScheduler:
    """Tests for the in-process cycle."""

    def test_settles_every_outstanding_referrer(self):
        store = seeded_store()
        scheduler = RewardScheduler(store, ServiceDispatcher(ReferralRewardService(store)))

        summary = scheduler.run()

        assert summary.referrers == 2
        assert summary.rewards_given == 2
        assert summary.failed_referrers == []
        assert store.get_wallet_balance("referrer-a") == Decimal("2000")
        assert store.get_wallet_balance("referrer-b") == Decimal("0")
        assert store.get_wallet_balance("referrer-c") == Decimal("0")

    def test_repeated_cycles_do_not_double_reward(self):
        store = seeded_store()
        scheduler = RewardScheduler(store, ServiceDispatcher(ReferralRewardService(store)))

        scheduler.run()
        second = scheduler.run()

        assert second.referrers == 1  # referrer-b is still qualified
        assert second.rewards_given == 0
        assert store.get_wallet_balance("referrer-a") == Decimal("2000")

    def test_dispatch_failure_isolated(self):
        store = seeded_store()
        dispatcher = FailingDispatcher(failing={"referrer-a"})

        summary = RewardScheduler(store, dispatcher).run()

        assert dispatcher.seen == ["referrer-a", "referrer-b"]
        assert summary.failed_referrers == ["referrer-a"]
        assert summary.rewards_given == 1

    def test_listing_failure_is_fatal(self):
        class BrokenStore(InMemoryStorage):
            def list_outstanding_referrers(self):
                raise StorageError("referrals table unavailable")

        with pytest.raises(StorageError):
            RewardScheduler(BrokenStore(), FailingDispatcher(failing=())).run()

    def test_build_scheduler_requires_key_for_http(self):
        with pytest.raises(ValueError):
            build_scheduler(Settings(service_role_key=None), InMemoryStorage(), over_http=True)


class TestHttpDispatcher:
    """Tests for dispatching over HTTP."""

    def test_posts_referrer_with_credential(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"rewardsGiven": 3, "failedReferrals": []})

        client = httpx.Client(transport=httpx.MockTransport(handler))
        dispatcher = HttpDispatcher(REWARD_URL, SERVICE_KEY, client=client)

        assert dispatcher.dispatch("referrer-a") == 3
        assert str(requests[0].url) == REWARD_URL
        assert requests[0].headers["Authorization"] == f"Bearer {SERVICE_KEY}"
        assert json.loads(requests[0].content) == {"referrer_id": "referrer-a"}

    def test_error_status_raises(self):
        client = httpx.Client(transport=httpx.MockTransport(
            lambda request: httpx.Response(500, json={"error": "boom"})
        ))
        dispatcher = HttpDispatcher(REWARD_URL, SERVICE_KEY, client=client)

        with pytest.raises(DispatchError):
            dispatcher.dispatch("referrer-a")

    def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        dispatcher = HttpDispatcher(REWARD_URL, SERVICE_KEY, client=httpx.Client(transport=httpx.MockTransport(handler)))

        with pytest.raises(DispatchError):
            dispatcher.dispatch("referrer-a")

    @pytest.mark.parametrize("response", [
        httpx.Response(200, text="<html>gateway</html>"),
        httpx.Response(200, json=["rewardsGiven"]),
        httpx.Response(200, json={"rewardsGiven": None}),
        httpx.Response(200, json={"rewardsGiven": "many"}),
    ])
    def test_unreadable_success_body_raises(self, response):
        client = httpx.Client(transport=httpx.MockTransport(lambda request: response))
        dispatcher = HttpDispatcher(REWARD_URL, SERVICE_KEY, client=client)

        with pytest.raises(DispatchError):
            dispatcher.dispatch("referrer-a")

    def test_unreadable_body_fails_referrer_not_cycle(self):
        client = httpx.Client(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, text="<html>gateway</html>")
        ))
        dispatcher = HttpDispatcher(REWARD_URL, SERVICE_KEY, client=client)

        summary = RewardScheduler(seeded_store(), dispatcher).run()

        assert summary.referrers == 2
        assert summary.rewards_given == 0
        assert summary.failed_referrers == ["referrer-a", "referrer-b"]

    def test_cycle_against_app(self):
        store = seeded_store()
        app = create_app(settings=Settings(service_role_key=SERVICE_KEY), store=store)
        dispatcher = HttpDispatcher("http://testserver/reward-referrals", SERVICE_KEY, client=TestClient(app))

        summary = RewardScheduler(store, dispatcher).run()

        assert summary.rewards_given == 2
        assert store.get_wallet_balance("referrer-a") == Decimal("2000")

    def test_wrong_key_fails_every_referrer(self):
        store = seeded_store()
        app = create_app(settings=Settings(service_role_key=SERVICE_KEY), store=store)
        dispatcher = HttpDispatcher("http://testserver/reward-referrals", "wrong-key", client=TestClient(app))

        summary = RewardScheduler(store, dispatcher).run()

        assert summary.failed_referrers == ["referrer-a", "referrer-b"]
        assert store.get_wallet_balance("referrer-a") == Decimal("0")
