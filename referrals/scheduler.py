"""
Recurring reward cycle.

Each cycle enumerates the referrers that still have pending or qualified
referrals and triggers one settlement per referrer. Delivery is
at-least-once: a referrer may be settled again by an overlapping cycle or a
retry, which the settlement job tolerates.
"""

from dataclasses import dataclass, field
from typing import Optional, Protocol

import httpx

from .config import Settings
from .logging_config import get_logger
from .service import ReferralRewardService, ReferralServiceError
from .storage import ReferralStore

logger = get_logger(__name__)


class DispatchError(Exception):
    pass


class RewardDispatcher(Protocol):
    def dispatch(self, referrer_id: str) -> int: ...


class ServiceDispatcher:
    """Settles in-process against the same store."""

    def __init__(self, service: ReferralRewardService):
        self.service = service

    def dispatch(self, referrer_id: str) -> int:
        try:
            return self.service.settle(referrer_id).rewards_given
        except ReferralServiceError as e:
            raise DispatchError(str(e)) from e


class HttpDispatcher:
    """Calls the settlement endpoint with the service credential."""

    def __init__(self, url: str, service_role_key: str, timeout: float = 30.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.service_role_key = service_role_key
        self.client = client or httpx.Client(timeout=timeout)

    def dispatch(self, referrer_id: str) -> int:
        try:
            response = self.client.post(
                self.url,
                json={"referrer_id": referrer_id},
                headers={"Authorization": f"Bearer {self.service_role_key}"},
            )
        except httpx.HTTPError as e:
            raise DispatchError(f"Request for referrer {referrer_id} failed: {e}") from e
        if response.status_code != 200:
            raise DispatchError(f"Referrer {referrer_id} returned {response.status_code}: {response.text}")
        try:
            return int(response.json().get("rewardsGiven", 0))
        except (ValueError, TypeError, AttributeError) as e:
            raise DispatchError(f"Referrer {referrer_id} returned an unreadable body: {e}") from e

    def close(self) -> None:
        self.client.close()


@dataclass
class CycleSummary:
    referrers: int = 0
    rewards_given: int = 0
    failed_referrers: list[str] = field(default_factory=list)


class RewardScheduler:
    def __init__(self, store: ReferralStore, dispatcher: RewardDispatcher):
        self.store = store
        self.dispatcher = dispatcher

    def run(self) -> CycleSummary:
        referrer_ids = self.store.list_outstanding_referrers()
        summary = CycleSummary(referrers=len(referrer_ids))

        for referrer_id in referrer_ids:
            try:
                summary.rewards_given += self.dispatcher.dispatch(referrer_id)
            except DispatchError as e:
                logger.error("referrer_dispatch_failed", referrer_id=referrer_id, error=str(e))
                summary.failed_referrers.append(referrer_id)

        logger.info(
            "reward_cycle_complete",
            referrers=summary.referrers,
            rewards_given=summary.rewards_given,
            failures=len(summary.failed_referrers),
        )
        return summary


def build_scheduler(settings: Settings, store: ReferralStore, over_http: bool = False) -> RewardScheduler:
    if over_http:
        if not settings.service_role_key:
            raise ValueError("service_role_key is required to call the reward endpoint")
        dispatcher = HttpDispatcher(
            settings.reward_api_url, settings.service_role_key, timeout=settings.request_timeout_seconds
        )
    else:
        dispatcher = ServiceDispatcher(ReferralRewardService.from_settings(settings, store))
    return RewardScheduler(store, dispatcher)


if __name__ == "__main__":
    import sys
    from .api import build_store
    from .config import get_settings
    from .logging_config import configure_logging

    settings = get_settings()
    configure_logging(settings)
    scheduler = build_scheduler(settings, build_store(settings), over_http="--http" in sys.argv)
    summary = scheduler.run()
    sys.exit(1 if summary.failed_referrers else 0)
