"""
Usage Meter Guard

Gates metered operations (AI screening, job description enhancement) on the
organization's Polar balance.

Normal mode:
- the remote balance is read from Polar on every check, so an exhausted
  balance is denied even while the local counter still has units left
- a local reservation counter `meter:{tenant}:{meter}` is seeded from it on
  first touch (SET NX, expiring at the end of the billing month); it is not
  re-seeded mid-period, so a top-up only lifts the remote check until the
  counter expires
- each check is one atomic DECR; a result below zero is denied and put back
- a successful balance read clears the degraded flag

Degraded mode (Polar unreachable):
- flag `meter:degraded:{tenant}` is set for an hour and admins are alerted
- each check is one atomic INCR of the degraded usage counter; a result
  above the free tier cap is denied and put back

Usage events always go to Polar. Events that fail to ingest are queued and
re-sent after the next successful ingest for the same tenant.

Redis failures fail open: availability wins over exact metering.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from redis.exceptions import RedisError

from hireloop.core.config import FREE_TIER_LIMITS, get_settings
from hireloop.core.redis import get_redis
from hireloop.models.records import MeterBalance
from hireloop.services.billing import (
    METER_NAMES,
    BillingClient,
    build_usage_event,
    get_billing_client,
)

logger = logging.getLogger(__name__)

DEGRADED_MODE_TTL_SECONDS = 60 * 60


@dataclass
class MeterCheck:
    allowed: bool
    balance: int
    degraded: bool = False


def reservation_key(tenant: str, meter_name: str) -> str:
    return f"meter:{tenant}:{meter_name}"


def degraded_flag_key(tenant: str) -> str:
    return f"meter:degraded:{tenant}"


def degraded_usage_key(tenant: str, meter_name: str) -> str:
    return f"meter:degraded_usage:{tenant}:{meter_name}"


def failed_events_key(tenant: str) -> str:
    return f"meter:failed_events:{tenant}"


def seconds_until_period_end(now: Optional[datetime] = None) -> int:
    """Seconds until the current billing period (UTC calendar month) ends."""
    now = now or datetime.now(timezone.utc)
    if now.month == 12:
        period_end = datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        period_end = datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
    return max(int((period_end - now).total_seconds()), 1)


async def send_admin_alert(text: str, webhook_url: Optional[str] = None) -> bool:
    """Post an alert to the admin Slack channel; logs instead when unconfigured."""
    webhook_url = webhook_url if webhook_url is not None else get_settings().admin_alert_webhook_url
    if not webhook_url:
        logger.warning(f"Admin alert (no webhook configured): {text}")
        return False
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(webhook_url, json={"text": text})
            response.raise_for_status()
        return True
    except httpx.HTTPError as e:
        logger.error(f"Failed to send admin alert: {e}")
        return False


class UsageMeterGuard:
    """Checks and reserves metered capacity for one organization at a time."""

    def __init__(self, billing: Optional[BillingClient] = None, redis=None):
        self._billing = billing
        self._redis = redis

    @property
    def billing(self) -> BillingClient:
        return self._billing if self._billing is not None else get_billing_client()

    @property
    def redis(self):
        return self._redis if self._redis is not None else get_redis()

    async def check_and_reserve(self, tenant: str, meter_name: str) -> MeterCheck:
        """
        Reserve one unit of `meter_name` for `tenant`.

        Returns allowed=False when the remote balance or the local reservation
        is exhausted.
        """
        try:
            remote_balance = await self.billing.get_balance(tenant, meter_name)
        except Exception as e:
            logger.error(f"Failed to check {meter_name} balance for {tenant}: {e}")
            return await self._check_degraded(tenant, meter_name, reason=str(e))

        if remote_balance <= 0:
            logger.warning(f"Insufficient {meter_name} balance for {tenant}: {remote_balance}")
            return MeterCheck(allowed=False, balance=max(remote_balance, 0))

        key = reservation_key(tenant, meter_name)
        try:
            if await self.redis.delete(degraded_flag_key(tenant)):
                logger.info(f"Billing reachable again for {tenant}, degraded mode cleared")
            await self.redis.set(key, remote_balance, nx=True, ex=seconds_until_period_end())
            remaining = int(await self.redis.decr(key))
            if remaining < 0:
                await self.redis.incr(key)
                logger.warning(f"Local {meter_name} reservation exhausted for {tenant}")
                return MeterCheck(allowed=False, balance=0)
        except RedisError as e:
            logger.error(f"Meter reservation failed for {tenant}/{meter_name}, allowing: {e}")
            return MeterCheck(allowed=True, balance=remote_balance)

        logger.info(f"Reserved 1 {meter_name} for {tenant}, {remaining} left")
        return MeterCheck(allowed=True, balance=remaining)

    async def _check_degraded(self, tenant: str, meter_name: str, reason: str) -> MeterCheck:
        cap = FREE_TIER_LIMITS.get(meter_name, 0)
        usage_key = degraded_usage_key(tenant, meter_name)
        try:
            newly_degraded = await self.redis.set(
                degraded_flag_key(tenant), reason or "billing unavailable",
                nx=True, ex=DEGRADED_MODE_TTL_SECONDS,
            )
            used = int(await self.redis.incr(usage_key))
            await self.redis.expire(usage_key, seconds_until_period_end())
            if used > cap:
                await self.redis.decr(usage_key)
        except RedisError as e:
            logger.error(f"Degraded mode check failed for {tenant}/{meter_name}, allowing: {e}")
            return MeterCheck(allowed=True, balance=cap, degraded=True)

        if newly_degraded:
            await send_admin_alert(
                f"Billing degraded mode enabled for {tenant}: {reason}. "
                f"Free tier limits apply for the next hour."
            )
        if used > cap:
            logger.warning(f"Free tier {meter_name} cap reached for {tenant} in degraded mode")
            return MeterCheck(allowed=False, balance=0, degraded=True)
        return MeterCheck(allowed=True, balance=cap - used, degraded=True)

    async def release(self, tenant: str, meter_name: str, degraded: bool = False) -> None:
        """Give back a reservation whose operation did not run.

        `degraded` must match the MeterCheck the unit was reserved with.
        """
        try:
            if degraded:
                key = degraded_usage_key(tenant, meter_name)
                if int(await self.redis.get(key) or 0) > 0:
                    await self.redis.decr(key)
            elif await self.redis.exists(reservation_key(tenant, meter_name)):
                await self.redis.incr(reservation_key(tenant, meter_name))
        except RedisError as e:
            logger.error(f"Failed to release {meter_name} reservation for {tenant}: {e}")

    async def is_degraded(self, tenant: str) -> bool:
        try:
            return bool(await self.redis.exists(degraded_flag_key(tenant)))
        except RedisError as e:
            logger.error(f"Could not read degraded flag for {tenant}: {e}")
            return False

    async def record_usage_event(
        self,
        tenant: str,
        meter_name: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Report one unit of usage. Never raises; failed events are queued.

        A successful ingest also drains events queued by earlier failures.
        """
        event = build_usage_event(tenant, meter_name, metadata)
        try:
            await self.billing.ingest_usage_event(event)
            logger.info(f"Usage event {event['name']} recorded for {tenant}")
        except Exception as e:
            logger.error(f"Failed to record usage event for {tenant}, queueing: {e}")
            await self._queue_failed_event(tenant, event)
            return

        try:
            await self.flush_failed_events(tenant)
        except RedisError as e:
            logger.error(f"Could not flush queued usage events for {tenant}: {e}")

    async def _queue_failed_event(self, tenant: str, event: Dict[str, Any]) -> None:
        try:
            await self.redis.rpush(failed_events_key(tenant), json.dumps(event))
        except RedisError as e:
            logger.error(f"Dropped usage event for {tenant}, queue unavailable: {e}")

    async def flush_failed_events(self, tenant: str) -> int:
        """Re-ingest queued events in order; stops at the first failure. Returns the count sent."""
        key = failed_events_key(tenant)
        sent = 0
        while True:
            raw = await self.redis.lpop(key)
            if raw is None:
                break
            event = json.loads(raw)
            try:
                await self.billing.ingest_usage_event(event)
            except Exception as e:
                logger.warning(f"Retry of queued usage event failed for {tenant}: {e}")
                await self.redis.lpush(key, raw)
                break
            sent += 1
        if sent:
            logger.info(f"Flushed {sent} queued usage events for {tenant}")
        return sent

    async def get_meter_balances(self, tenant: str) -> Dict[str, MeterBalance]:
        """Remote balance, local reservation and degraded flag for every meter."""
        try:
            remote = {b["meter_name"]: int(b.get("balance") or 0) for b in await self.billing.list_meter_balances(tenant)}
        except Exception as e:
            logger.error(f"Failed to get meter balances for {tenant}: {e}")
            return {}

        degraded = await self.is_degraded(tenant)
        balances: Dict[str, MeterBalance] = {}
        for meter_name in METER_NAMES:
            if meter_name not in remote:
                continue
            try:
                local = await self.redis.get(reservation_key(tenant, meter_name))
            except RedisError:
                local = None
            balances[meter_name] = MeterBalance(
                remote_balance=remote[meter_name],
                local_reservation=int(local) if local is not None else None,
                degraded=degraded,
            )
        return balances


_guard: Optional[UsageMeterGuard] = None


def get_usage_meter_guard() -> UsageMeterGuard:
    """Get the meter guard singleton."""
    global _guard
    if _guard is None:
        _guard = UsageMeterGuard()
    return _guard
