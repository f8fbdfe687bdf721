import pytest

from jobdispatch.common.backoff import BackoffPolicy


def test_fixed_backoff_is_constant():
    policy = BackoffPolicy(strategy="fixed", base_delay=2.0)
    assert [policy.compute_delay(n) for n in (1, 2, 3)] == [2.0, 2.0, 2.0]


def test_exponential_backoff_doubles():
    policy = BackoffPolicy(strategy="exponential", base_delay=5.0)
    # 5s -> 10s -> 20s
    assert [policy.compute_delay(n) for n in (1, 2, 3)] == [5.0, 10.0, 20.0]


def test_exponential_backoff_respects_factor_and_cap():
    policy = BackoffPolicy(base_delay=1.0, factor=3.0, max_delay=5.0)
    assert policy.compute_delay(1) == 1.0
    assert policy.compute_delay(2) == 3.0
    assert policy.compute_delay(3) == 5.0


def test_from_value_accepts_camel_case_mapping():
    policy = BackoffPolicy.from_value({"type": "fixed", "baseDelay": 3})
    assert policy == BackoffPolicy(strategy="fixed", base_delay=3)
    assert BackoffPolicy.from_value(None) is None
    assert BackoffPolicy.from_value(policy) is policy


@pytest.mark.parametrize(
    "kwargs",
    [{"strategy": "linear"}, {"base_delay": -1}, {"factor": 0.5}],
)
def test_invalid_backoff_rejected(kwargs):
    with pytest.raises(ValueError):
        BackoffPolicy(**kwargs)
