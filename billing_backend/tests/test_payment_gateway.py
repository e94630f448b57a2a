import random
from decimal import Decimal

import pytest

from billing_backend.app.billing import GatewayTimeoutError, SimulatedPaymentGateway


def _gateway(**kwargs) -> SimulatedPaymentGateway:
    sleeps = kwargs.pop("sleeps", [])
    params = dict(min_latency=0.0, max_latency=0.0, rng=random.Random(7), sleep=sleeps.append)
    params.update(kwargs)
    return SimulatedPaymentGateway(**params)


def test_forced_success_returns_external_id():
    result = _gateway(success_rate=1.0).charge("TXN-1", Decimal("110.00"), "USD")

    assert result.success
    assert result.external_id.startswith("pay_")
    assert result.failure_reason is None


def test_forced_failure_returns_reason():
    result = _gateway(success_rate=0.0).charge("TXN-1", Decimal("110.00"), "USD")

    assert not result.success
    assert result.external_id is None
    assert result.failure_reason


def test_non_positive_amount_is_declined():
    result = _gateway(success_rate=1.0).charge("TXN-1", Decimal("0"), "USD")
    assert result.failure_reason == "Invalid payment amount"


def test_refund_requires_gateway_reference():
    gateway = _gateway(refund_success_rate=1.0)

    assert gateway.refund("pay_123", Decimal("10")).refund_id.startswith("rfnd_")
    assert not gateway.refund(None, Decimal("10")).success
    assert not _gateway(refund_success_rate=0.0).refund("pay_123", Decimal("10")).success


def test_latency_is_bounded_by_timeout():
    sleeps = []
    gateway = _gateway(min_latency=2.0, max_latency=3.0, timeout_seconds=0.5, sleeps=sleeps)

    with pytest.raises(GatewayTimeoutError):
        gateway.charge("TXN-1", Decimal("110.00"), "USD")
    assert sleeps == [0.5]


def test_latency_within_bounds_is_simulated():
    sleeps = []
    _gateway(min_latency=0.1, max_latency=0.2, sleeps=sleeps).charge("TXN-1", Decimal("1"), "USD")

    assert len(sleeps) == 1
    assert 0.1 <= sleeps[0] <= 0.2


@pytest.mark.parametrize(
    "kwargs",
    [{"success_rate": 1.5}, {"refund_success_rate": -0.1}, {"min_latency": 1.0, "max_latency": 0.5}],
)
def test_invalid_configuration_is_rejected(kwargs):
    with pytest.raises(ValueError):
        _gateway(**kwargs)
