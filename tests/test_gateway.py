import pytest
from sqlalchemy.exc import OperationalError

from app.services.background_tasks import DeferredWorkQueue
from app.services.subscription_gateway.decision_cache import DecisionCache, Verdict
from app.services.subscription_gateway.errors import (
    DeviceLimitExceeded,
    GatewayError,
    RegistryUnavailable,
    TokenUnresolved,
)
from app.services.subscription_gateway.gateway import SubscriptionGateway, SubscriptionRequest
from app.services.subscription_gateway.geo import GeoService
from app.services.subscription_gateway.upstream import SubscriptionVariant, UpstreamProxy
from tests.conftest import RecordingNotifier

TOKEN = "dGdfOTc4ODU1NTE2LDE3NzExNDc3MzE8x7xAzvZbH"


class CountingPolicy:
    def __init__(self, verdict=None, error=None):
        self.verdict = verdict or Verdict.allow()
        self.error = error
        self.calls = 0

    async def evaluate(self, subscriber_ref, fingerprint):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.verdict


def _gateway(policy, fake_clock) -> SubscriptionGateway:
    return SubscriptionGateway(
        proxy=UpstreamProxy(None, base_url="http://panel:8000"),
        decision_cache=DecisionCache(cooldown_seconds=60, clock=fake_clock),
        policy=policy,
        registry=None,
        geo=GeoService(None),
        notifier=RecordingNotifier(),
        work_queue=DeferredWorkQueue(),
    )


def _request(ip="203.0.113.1", user_agent="Happ/2.3.1") -> SubscriptionRequest:
    return SubscriptionRequest(token=TOKEN, client_ip=ip, user_agent=user_agent)


@pytest.mark.parametrize("verdict", [Verdict.allow(), Verdict.deny(DeviceLimitExceeded(5))])
async def test_repeated_request_within_cooldown_reuses_verdict(fake_clock, verdict):
    policy = CountingPolicy(verdict)
    gateway = _gateway(policy, fake_clock)

    first = await gateway.admit(_request(), "tg_978855516")
    fake_clock.advance(45)
    second = await gateway.admit(_request(), "tg_978855516")

    assert policy.calls == 1
    assert first.severity == second.severity
    assert first.error is second.error

    fake_clock.advance(20)
    await gateway.admit(_request(), "tg_978855516")
    assert policy.calls == 2


async def test_different_address_is_evaluated_separately(fake_clock):
    policy = CountingPolicy()
    gateway = _gateway(policy, fake_clock)

    await gateway.admit(_request(ip="203.0.113.1"), "tg_978855516")
    await gateway.admit(_request(ip="203.0.113.2"), "tg_978855516")

    assert policy.calls == 2


async def test_unresolved_token_skips_policy(fake_clock):
    policy = CountingPolicy()
    gateway = _gateway(policy, fake_clock)

    outcome = await gateway.admit(_request(), None)

    assert outcome.is_advisory
    assert isinstance(outcome.error, TokenUnresolved)
    assert outcome.value.allowed
    assert policy.calls == 0


async def test_storage_failure_allows_and_is_not_cached(fake_clock):
    policy = CountingPolicy(error=OperationalError("SELECT 1", {}, Exception("disk I/O error")))
    gateway = _gateway(policy, fake_clock)

    outcome = await gateway.admit(_request(), "tg_978855516")
    await gateway.admit(_request(), "tg_978855516")

    assert outcome.is_advisory
    assert isinstance(outcome.error, RegistryUnavailable)
    assert outcome.value.allowed
    assert policy.calls == 2
    assert len(gateway.decision_cache) == 0


@pytest.mark.parametrize("variant", [SubscriptionVariant.PLAIN, SubscriptionVariant.INFO])
async def test_denied_device_is_refused_for_every_variant(fake_clock, variant):
    policy = CountingPolicy(Verdict.deny(DeviceLimitExceeded(5)))
    gateway = _gateway(policy, fake_clock)
    request = _request()
    request.variant = variant

    response = await gateway.handle(request)

    assert response.status_code == 403
    assert response.body == b"Device Limit Exceeded (Max 5)"
    assert policy.calls == 1


def test_unresolved_token_carries_no_http_status_of_its_own():
    assert TokenUnresolved.status_code == GatewayError.status_code
