"""
Ad mining: BSK rewards for viewing ads.

Users without a subscription earn a small *holding* reward for a limited
number of free views per day. Subscribers earn their tier's daily BSK into
the *withdrawable* balance, spread over a fixed number of views per tier.
"""

import logging
import time
import uuid
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from ismart_edge.core import ledger
from ismart_edge.core.errors import NotFoundError, RateLimitedError, ValidationError
from ismart_edge.core.models import (
    Ad,
    AdClick,
    AdMiningSettings,
    AdUserSubscription,
    AdminActionLog,
    UserDailyAdView,
    ZERO,
    db,
    lock_rows,
)
from ismart_edge.core.utils.time_utils import date_key, today_utc, utcnow

logger = logging.getLogger(__name__)

TAG = "[process-ad-click]"


def get_ad_mining_settings() -> AdMiningSettings:
    settings = AdMiningSettings.select().order_by(AdMiningSettings.id.desc()).first()
    if settings is None:
        settings = AdMiningSettings()
    return settings


class AdMiningService:
    """Service for ad view rewards and the daily maintenance sweep."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize ad mining service.

        Args:
            config: ``ad_mining`` config section
        """
        config = config or {}
        self.duplicate_window_seconds = int(config.get('duplicate_window_seconds', 30))
        self.history_retention_days = int(config.get('history_retention_days', 7))
        self.completion_bonus_enabled = bool(config.get('completion_bonus_enabled', True))
        self.completion_bonus_percent = Decimal(str(config.get('completion_bonus_percent', 10)))
        self.completion_bonus_destination = config.get('completion_bonus_destination', 'withdrawable')

    def _active_subscriptions(self, user_id: uuid.UUID, now: datetime) -> List[AdUserSubscription]:
        return list(AdUserSubscription.select().where(
            (AdUserSubscription.user_id == user_id)
            & (AdUserSubscription.status == 'active')
            & (AdUserSubscription.active_until >= now)
        ))

    def _check_click_allowed(self, user_id: uuid.UUID, ad: Ad, viewing_time: float, now: datetime):
        """Duplicate window, per-ad daily cap and minimum view time; run under the daily row lock."""
        window_start = now - timedelta(seconds=self.duplicate_window_seconds)
        recent = AdClick.select().where(
            (AdClick.user_id == user_id) & (AdClick.ad == ad.id) & (AdClick.started_at >= window_start)
        ).exists()
        if recent:
            logger.warning(f"{TAG} Duplicate click by user {user_id} on ad {ad.id}")
            raise RateLimitedError("Please wait before viewing this ad again")

        day_start = datetime.combine(now.date(), datetime.min.time())
        if ad.max_impressions_per_user_per_day:
            views_today = AdClick.select().where(
                (AdClick.user_id == user_id) & (AdClick.ad == ad.id) & (AdClick.started_at >= day_start)
            ).count()
            if views_today >= ad.max_impressions_per_user_per_day:
                raise RateLimitedError("Daily view limit reached for this ad")

        if viewing_time < ad.required_view_time_seconds:
            raise ValidationError(
                f"Ad must be viewed for at least {ad.required_view_time_seconds} seconds"
            )

    def process_ad_click(self, user_id: uuid.UUID, ad_id: Any, viewing_time_seconds: Any) -> Dict[str, Any]:
        """
        Validate an ad view and credit its reward.

        Args:
            user_id: Viewer
            ad_id: Ad id
            viewing_time_seconds: Seconds the ad was on screen

        Returns:
            Response fields: success, reward_bsk, balance_type, views_remaining, click_id

        Raises:
            NotFoundError: Unknown ad
            ValidationError: Ad not running, view too short or rewards disabled
            RateLimitedError: Duplicate click or a daily limit is reached
        """
        try:
            ad_key = uuid.UUID(str(ad_id))
        except ValueError:
            raise NotFoundError("Ad not found")
        try:
            viewing_time = float(viewing_time_seconds)
        except (TypeError, ValueError):
            raise ValidationError("viewingTimeSeconds must be a number")

        ad = Ad.get_or_none(Ad.id == ad_key)
        if ad is None:
            raise NotFoundError("Ad not found")
        if ad.status != 'active':
            raise ValidationError("Ad is not active")

        now = utcnow()
        if (ad.start_at and now < ad.start_at) or (ad.end_at and now > ad.end_at):
            raise ValidationError("Ad is not currently running")

        settings = get_ad_mining_settings()
        subscriptions = self._active_subscriptions(user_id, now)
        today_key = date_key(now)

        # The daily row is the per-user lock, so it must exist before locking
        UserDailyAdView.insert(user_id=user_id, date_key=today_key).on_conflict_ignore().execute()

        with db.atomic():
            daily = lock_rows(UserDailyAdView.select().where(
                (UserDailyAdView.user_id == user_id) & (UserDailyAdView.date_key == today_key)
            )).first()

            self._check_click_allowed(user_id, ad, viewing_time, now)

            if subscriptions:
                per_tier = max(1, int(settings.max_subscription_payout_per_day_per_tier))
                limit = per_tier * len(subscriptions)
                used = daily.subscription_views_used
                if used >= limit:
                    raise RateLimitedError("Daily subscription view limit reached", views_remaining=0)
                reward = ledger.round_amount(
                    sum((Decimal(s.daily_bsk) for s in subscriptions), ZERO) / per_tier
                )
                balance_type = 'withdrawable'
                tx_subtype = 'subscription_ad_reward'
                tier = ",".join(s.tier_id for s in subscriptions)
            else:
                if not settings.free_daily_enabled:
                    raise ValidationError("Free ad rewards are currently disabled")
                limit = int(settings.max_free_per_day)
                used = daily.free_views_used
                if used >= limit:
                    raise RateLimitedError("Daily free view limit reached", views_remaining=0)
                reward = Decimal(ad.reward_bsk)
                if reward <= 0:
                    reward = Decimal(settings.free_daily_reward_bsk)
                reward = ledger.round_amount(reward)
                balance_type = 'holding'
                tx_subtype = 'ad_reward'
                tier = None

            click = AdClick.create(
                ad=ad.id,
                user_id=user_id,
                started_at=now,
                completed_at=now,
                rewarded=reward > 0,
                reward_bsk=reward,
                subscription_tier=tier,
                notes=f"viewing_time={viewing_time:g}s",
            )

            if reward > 0:
                ledger.record_bsk_transaction(
                    user_id,
                    f"ad_click_{click.id}",
                    'credit',
                    tx_subtype,
                    balance_type,
                    reward,
                    notes=f"Ad reward: {ad.title}",
                    meta={'ad_id': str(ad.id), 'click_id': str(click.id), 'subscription_tier': tier},
                )

            if subscriptions:
                daily.subscription_views_used += 1
                for sub in subscriptions:
                    AdUserSubscription.update(
                        total_earned_bsk=AdUserSubscription.total_earned_bsk
                        + ledger.round_amount(Decimal(sub.daily_bsk) / per_tier),
                        updated_at=now,
                    ).where(AdUserSubscription.id == sub.id).execute()
            else:
                daily.free_views_used += 1
            daily.total_bsk_earned = Decimal(daily.total_bsk_earned) + reward
            daily.last_view_at = now
            daily.updated_at = now
            daily.save()

        views_remaining = max(0, limit - used - 1)
        logger.info(
            f"{TAG} User {user_id} rewarded {reward} BSK ({balance_type}) for ad {ad.id}, "
            f"{views_remaining} views remaining"
        )

        return {
            'success': True,
            'reward_bsk': float(reward),
            'balance_type': balance_type,
            'views_remaining': views_remaining,
            'click_id': str(click.id),
        }

    # ------------------------------------------------------------------
    # Daily reset
    # ------------------------------------------------------------------

    def _reset_daily_counters(self) -> Dict[str, int]:
        """Delete daily view rows past the retention window, count today's rows."""
        cutoff = date_key(today_utc() - timedelta(days=self.history_retention_days))
        deleted = UserDailyAdView.delete().where(UserDailyAdView.date_key < cutoff).execute()
        logger.info(f"Deleted {deleted} old daily view records (before {cutoff})")

        today_count = UserDailyAdView.select().where(UserDailyAdView.date_key == date_key()).count()
        return {'count': today_count, 'deleted': deleted}

    def _expire_subscriptions(self, errors: List[str]) -> Dict[str, Any]:
        """Expire finished subscriptions and pay completion bonuses."""
        now = utcnow()
        expired = list(AdUserSubscription.select().where(
            (AdUserSubscription.status == 'active') & (AdUserSubscription.active_until < now)
        ))
        if not expired:
            logger.info("No subscriptions to expire")
            return {'count': 0, 'user_ids': [], 'missed_earnings': ZERO, 'bonuses_paid': ZERO}

        missed_total = ZERO
        bonuses_paid = ZERO

        for sub in expired:
            missed_days = max(0, (sub.end_date - sub.active_until.date()).days)
            missed_total += Decimal(sub.daily_bsk) * missed_days

            completed_full = (sub.total_missed_days or 0) == 0 and missed_days == 0
            if not (self.completion_bonus_enabled and completed_full):
                continue

            bonus = (Decimal(sub.purchased_bsk) * self.completion_bonus_percent / 100).quantize(
                Decimal("1"), rounding=ROUND_HALF_UP
            )
            if bonus <= 0:
                continue

            try:
                ledger.record_bsk_transaction(
                    sub.user_id,
                    f"ad_subscription_completion_bonus_{sub.id}",
                    'credit',
                    'subscription_completion_bonus',
                    self.completion_bonus_destination,
                    bonus,
                    notes=(
                        f"Completion bonus for {sub.days_total}-day subscription "
                        f"({self.completion_bonus_percent.normalize():f}% of {Decimal(sub.purchased_bsk).normalize():f} BSK)"
                    ),
                    meta={'subscription_id': str(sub.id), 'bonus_percent': float(self.completion_bonus_percent)},
                )
            except Exception as e:
                message = f"Completion bonus failed for subscription {sub.id}: {e}"
                logger.error(message, exc_info=True)
                errors.append(message)
                continue

            AdUserSubscription.update(
                completion_bonus_bsk=bonus,
                completion_bonus_credited_at=now,
            ).where(AdUserSubscription.id == sub.id).execute()
            bonuses_paid += bonus
            logger.info(f"User {sub.user_id} completed {sub.days_total} days, bonus {bonus} BSK")

        AdUserSubscription.update(status='expired', updated_at=now).where(
            AdUserSubscription.id.in_([s.id for s in expired])
        ).execute()

        user_ids = sorted({str(s.user_id) for s in expired})
        logger.info(f"Expired {len(expired)} subscriptions for {len(user_ids)} users")
        return {
            'count': len(expired),
            'user_ids': user_ids,
            'missed_earnings': missed_total,
            'bonuses_paid': bonuses_paid,
        }

    def daily_reset(self) -> Dict[str, Any]:
        """
        Daily maintenance: prune view history, expire subscriptions, pay
        completion bonuses and record the run in ``admin_actions_log``.

        Returns:
            Summary; ``success`` is False when any step failed (partial result)
        """
        logger.info("Starting ad mining daily reset")
        started = time.monotonic()
        errors: List[str] = []
        counters = {'count': 0, 'deleted': 0}
        subs = {'count': 0, 'user_ids': [], 'missed_earnings': ZERO, 'bonuses_paid': ZERO}

        try:
            counters = self._reset_daily_counters()
        except Exception as e:
            message = f"Counter reset failed: {e}"
            logger.error(message, exc_info=True)
            errors.append(message)

        try:
            subs = self._expire_subscriptions(errors)
        except Exception as e:
            message = f"Subscription expiration failed: {e}"
            logger.error(message, exc_info=True)
            errors.append(message)

        statistics = {
            'daily_counters_reset': counters['count'],
            'old_records_deleted': counters['deleted'],
            'subscriptions_expired': subs['count'],
            'users_affected_count': len(subs['user_ids']),
            'total_missed_earnings_bsk': float(subs['missed_earnings']),
            'completion_bonuses_paid_bsk': float(subs['bonuses_paid']),
            'errors': errors,
        }

        try:
            AdminActionLog.create(
                admin_user_id=None,
                action_type='daily_reset',
                target_table='ad_user_subscriptions',
                details=dict(
                    statistics,
                    reset_type='daily_ad_mining_reset',
                    date=date_key(),
                    users_affected=subs['user_ids'],
                ),
            )
        except Exception as e:
            logger.warning(f"Failed to log daily reset action: {e}")

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Daily reset completed in {elapsed_ms}ms with {len(errors)} errors")

        return {
            'success': not errors,
            'reset_date': date_key(),
            'statistics': statistics,
            'execution_time_ms': elapsed_ms,
        }
