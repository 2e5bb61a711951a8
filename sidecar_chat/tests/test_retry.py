from sidecar_chat.config.settings import Settings
from sidecar_chat.providers.retry import BackoffPolicy


def test_backoff_doubles_until_cap():
    policy = BackoffPolicy(base_seconds=1.0, max_seconds=5.0)
    assert [policy.delay_for_attempt(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_backoff_jitter_stays_under_cap():
    policy = BackoffPolicy(base_seconds=1.0, max_seconds=5.0, jitter=0.5)
    assert policy.delay_for_attempt(1, rand=lambda lo, hi: hi) == 1.5
    assert policy.delay_for_attempt(3, rand=lambda lo, hi: hi) == 5.0


def test_backoff_from_settings():
    policy = BackoffPolicy.from_settings(Settings(backoff_base_seconds=0.5, backoff_max_seconds=2.0))
    assert policy.delay_for_attempt(1) == 0.5
    assert policy.delay_for_attempt(4) == 2.0
