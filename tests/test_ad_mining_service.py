"""Tests for ad view rewards and the daily reset."""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from conftest import create_user
from ismart_edge.core import ledger
from ismart_edge.core.errors import NotFoundError, RateLimitedError, ValidationError
from ismart_edge.core.models import (
    Ad,
    AdClick,
    AdMiningSettings,
    AdUserSubscription,
    AdminActionLog,
    UserDailyAdView,
)
from ismart_edge.core.utils.time_utils import date_key, today_utc, utcnow
from ismart_edge.services import ad_mining_service
from ismart_edge.services.ad_mining_service import AdMiningService


@pytest.fixture
def service():
    return AdMiningService({'duplicate_window_seconds': 30, 'history_retention_days': 7})


@pytest.fixture
def ad(database):
    AdMiningSettings.create(free_daily_reward_bsk=Decimal("1"), max_free_per_day=2,
                            max_subscription_payout_per_day_per_tier=2)
    return Ad.create(title="Launch", required_view_time_seconds=10, reward_bsk=Decimal("0.5"))


def _age_clicks(user_id, seconds=60):
    """Move a user's clicks back in time, past the duplicate window."""
    for click in AdClick.select().where(AdClick.user_id == user_id):
        click.started_at = click.started_at - timedelta(seconds=seconds)
        click.save()


def _subscription(user_id, daily_bsk, days_ago=0, days_total=100, purchased=Decimal("1000")):
    start = today_utc() - timedelta(days=days_ago)
    end = start + timedelta(days=days_total)
    return AdUserSubscription.create(
        user_id=user_id,
        tier_id=f"tier-{daily_bsk}",
        purchased_bsk=purchased,
        daily_bsk=daily_bsk,
        days_total=days_total,
        start_date=start,
        end_date=end,
        active_until=datetime.combine(end, datetime.min.time()),
    )


def test_free_view_credits_holding(ad, service):
    user_id = create_user()

    result = service.process_ad_click(user_id, str(ad.id), 12)

    assert result["success"] is True
    assert result["reward_bsk"] == 0.5
    assert result["balance_type"] == "holding"
    assert result["views_remaining"] == 1
    assert ledger.get_bsk_balance(user_id) == (Decimal("0.5"), Decimal("0"))
    daily = UserDailyAdView.get(UserDailyAdView.user_id == user_id)
    assert daily.free_views_used == 1
    assert daily.date_key == date_key()
    assert AdClick.get_by_id(uuid.UUID(result["click_id"])).rewarded is True


def test_free_view_falls_back_to_settings_reward(ad, service):
    ad.reward_bsk = 0
    ad.save()

    result = service.process_ad_click(create_user(), str(ad.id), 10)

    assert result["reward_bsk"] == 1.0


def test_duplicate_click_rate_limited(ad, service):
    user_id = create_user()
    service.process_ad_click(user_id, str(ad.id), 12)

    with pytest.raises(RateLimitedError, match="Please wait"):
        service.process_ad_click(user_id, str(ad.id), 12)


def test_click_committed_while_waiting_for_lock_is_seen(ad, service, monkeypatch):
    user_id = create_user()
    real_lock_rows = ad_mining_service.lock_rows

    def lock_after_concurrent_click(query):
        # another request for the same ad commits while this one waits on the daily row
        AdClick.create(ad=ad.id, user_id=user_id, started_at=utcnow(), rewarded=True, reward_bsk=Decimal("0.5"))
        return real_lock_rows(query)

    monkeypatch.setattr(ad_mining_service, "lock_rows", lock_after_concurrent_click)

    with pytest.raises(RateLimitedError, match="Please wait"):
        service.process_ad_click(user_id, str(ad.id), 12)
    assert ledger.get_bsk_balance(user_id) == (Decimal("0"), Decimal("0"))
    assert UserDailyAdView.get(UserDailyAdView.user_id == user_id).free_views_used == 0


def test_free_daily_limit(ad, service):
    user_id = create_user()
    service.process_ad_click(user_id, str(ad.id), 12)
    _age_clicks(user_id)
    service.process_ad_click(user_id, str(ad.id), 12)
    _age_clicks(user_id)

    with pytest.raises(RateLimitedError, match="Daily free view limit reached"):
        service.process_ad_click(user_id, str(ad.id), 12)
    assert ledger.get_bsk_balance(user_id)[0] == Decimal("1")


def test_per_ad_daily_cap(ad, service):
    ad.max_impressions_per_user_per_day = 1
    ad.save()
    user_id = create_user()
    service.process_ad_click(user_id, str(ad.id), 12)
    _age_clicks(user_id)

    with pytest.raises(RateLimitedError, match="Daily view limit reached for this ad"):
        service.process_ad_click(user_id, str(ad.id), 12)


def test_view_too_short(ad, service):
    with pytest.raises(ValidationError, match="at least 10 seconds"):
        service.process_ad_click(create_user(), str(ad.id), 9.5)
    assert AdClick.select().count() == 0


def test_ad_state_checks(ad, service):
    user_id = create_user()
    with pytest.raises(NotFoundError):
        service.process_ad_click(user_id, str(uuid.uuid4()), 12)

    ad.end_at = utcnow() - timedelta(days=1)
    ad.save()
    with pytest.raises(ValidationError, match="not currently running"):
        service.process_ad_click(user_id, str(ad.id), 12)

    ad.status = "paused"
    ad.save()
    with pytest.raises(ValidationError, match="Ad is not active"):
        service.process_ad_click(user_id, str(ad.id), 12)


def test_free_rewards_disabled(ad, service):
    AdMiningSettings.update(free_daily_enabled=False).execute()
    with pytest.raises(ValidationError, match="Free ad rewards are currently disabled"):
        service.process_ad_click(create_user(), str(ad.id), 12)


def test_subscriber_view_credits_withdrawable(ad, service):
    user_id = create_user()
    first = _subscription(user_id, Decimal("10"))
    second = _subscription(user_id, Decimal("6"))

    result = service.process_ad_click(user_id, str(ad.id), 12)

    # (10 + 6) daily BSK spread over 2 views per tier
    assert result["reward_bsk"] == 8.0
    assert result["balance_type"] == "withdrawable"
    assert result["views_remaining"] == 3
    assert ledger.get_bsk_balance(user_id) == (Decimal("0"), Decimal("8"))
    assert Decimal(AdUserSubscription.get_by_id(first.id).total_earned_bsk) == Decimal("5")
    assert Decimal(AdUserSubscription.get_by_id(second.id).total_earned_bsk) == Decimal("3")
    assert UserDailyAdView.get(UserDailyAdView.user_id == user_id).subscription_views_used == 1


def test_daily_reset_prunes_history_and_expires_subscriptions(ad, service):
    user_id = create_user()
    old_key = date_key(today_utc() - timedelta(days=10))
    UserDailyAdView.create(user_id=user_id, date_key=old_key)
    UserDailyAdView.create(user_id=user_id, date_key=date_key())
    finished = _subscription(user_id, Decimal("10"), days_ago=101)
    active = _subscription(user_id, Decimal("10"))

    result = service.daily_reset()

    assert result["success"] is True
    stats = result["statistics"]
    assert stats["old_records_deleted"] == 1
    assert stats["daily_counters_reset"] == 1
    assert stats["subscriptions_expired"] == 1
    assert stats["users_affected_count"] == 1
    # 10% of 1000 purchased BSK
    assert stats["completion_bonuses_paid_bsk"] == 100.0
    assert ledger.get_bsk_balance(user_id)[1] == Decimal("100")
    assert AdUserSubscription.get_by_id(finished.id).status == "expired"
    assert AdUserSubscription.get_by_id(active.id).status == "active"
    assert AdminActionLog.get().action_type == "daily_reset"

    # bonus is paid once even if the sweep runs again
    AdUserSubscription.update(status="active").where(AdUserSubscription.id == finished.id).execute()
    service.daily_reset()
    assert ledger.get_bsk_balance(user_id)[1] == Decimal("100")


def test_daily_reset_skips_bonus_for_missed_days(ad, service):
    user_id = create_user()
    sub = _subscription(user_id, Decimal("10"), days_ago=101)
    AdUserSubscription.update(total_missed_days=3).where(AdUserSubscription.id == sub.id).execute()

    stats = service.daily_reset()["statistics"]

    assert stats["subscriptions_expired"] == 1
    assert stats["completion_bonuses_paid_bsk"] == 0.0
    assert ledger.get_bsk_balance(user_id) == (Decimal("0"), Decimal("0"))
