from datetime import timedelta

from codebot.config import TIER_CONFIGS, tier_quota
from codebot.service.quota import QuotaGate, is_account_active
from codebot.storage.models import Tier, User, utcnow


def _user(count: int, quota: int = 100) -> User:
    user = User.new("42", message_quota=quota)
    user.message_count = count
    return user


def test_quota_allows_until_last_message():
    gate = QuotaGate()
    status = gate.evaluate(_user(99))
    assert status.allowed
    assert status.remaining == 1
    assert status.used == 99
    assert status.total == 100


def test_quota_blocks_when_count_reaches_ceiling():
    status = QuotaGate().evaluate(_user(100))
    assert not status.allowed
    assert status.remaining == 0


def test_over_quota_remaining_never_negative():
    status = QuotaGate().evaluate(_user(150))
    assert not status.allowed
    assert status.remaining == 0


def test_evaluate_does_not_mutate_user():
    user = _user(5)
    before = (user.message_count, user.message_quota, user.quota_reset_date)
    QuotaGate().evaluate(user)
    assert (user.message_count, user.message_quota, user.quota_reset_date) == before


def test_reset_date_is_reported():
    user = _user(0)
    user.quota_reset_date = utcnow() + timedelta(days=3)
    assert QuotaGate().evaluate(user).reset_date == user.quota_reset_date


def test_activation_flag_is_tri_state():
    user = _user(0)
    user.is_active = None
    assert is_account_active(user)
    user.is_active = True
    assert is_account_active(user)
    user.is_active = False
    assert not is_account_active(user)


def test_tier_quotas():
    assert tier_quota(Tier.FREE) == 100
    assert tier_quota(Tier.BASIC) == 500
    assert tier_quota(Tier.PRO) == 2000
    assert tier_quota("unknown") == TIER_CONFIGS[Tier.FREE].message_quota
