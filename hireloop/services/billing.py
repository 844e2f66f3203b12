"""
Billing Integration (Polar)

Subscription state for each organization lives in Polar, keyed by the
Linear organization id as the external customer id:
- usage meters (candidate screenings, job descriptions) with a balance
- granted benefits (email communication, AI screening)

Benefit checks fail closed: a lookup error or a missing benefit id in the
configuration means "not granted".
"""
from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from hireloop.core.config import get_settings
from hireloop.services.retry import raise_for_status, with_retry

logger = logging.getLogger(__name__)

METER_NAMES = ("job_descriptions", "candidate_screenings")

USAGE_EVENT_NAMES = {
    "job_descriptions": "job_description_generated",
    "candidate_screenings": "candidate_screened",
}


class BillingClient(ABC):
    """Remote balances, usage ingestion and benefit lookup for one provider."""

    @abstractmethod
    async def get_balance(self, tenant: str, meter_name: str) -> int:
        """Remaining units on `meter_name`; 0 when the customer or meter is unknown."""

    @abstractmethod
    async def list_meter_balances(self, tenant: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def ingest_usage_event(self, event: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def has_benefit(self, tenant: str, benefit_id: str) -> bool:
        ...


def build_usage_event(tenant: str, meter_name: str, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Usage event payload in Polar's ingestion format."""
    return {
        "name": USAGE_EVENT_NAMES.get(meter_name, meter_name),
        "external_customer_id": tenant,
        "metadata": {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "meter_name": meter_name,
            **(metadata or {}),
        },
    }


class PolarBillingClient(BillingClient):
    """
    Client for the Polar REST API.

    Polar API: https://docs.polar.sh/api-reference

    Endpoints used:
    - /customers/external/{id}/state: active meters and granted benefits
    - /events/ingest: usage events
    """

    def __init__(self, access_token: Optional[str] = None, api_url: Optional[str] = None):
        settings = get_settings()
        self.access_token = access_token or settings.polar_access_token
        self.api_url = (api_url or settings.polar_api_url).rstrip("/")
        if not self.access_token:
            logger.warning("Polar access token not configured")
        self.headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    async def get_customer_state(self, tenant: str) -> Optional[Dict[str, Any]]:
        async def _get() -> Optional[Dict[str, Any]]:
            async with httpx.AsyncClient(timeout=15.0) as client:
                response = await client.get(
                    f"{self.api_url}/customers/external/{tenant}/state",
                    headers=self.headers,
                )
            if response.status_code == 404:
                return None
            raise_for_status("polar", response)
            return response.json()

        return await with_retry(_get, label="polar.customer_state")

    def _find_meter(self, state: Dict[str, Any], meter_name: str) -> Optional[Dict[str, Any]]:
        meter_id = get_settings().meter_id(meter_name)
        for meter in state.get("active_meters") or []:
            if meter.get("meter_id") == meter_id:
                return meter
        return None

    async def get_balance(self, tenant: str, meter_name: str) -> int:
        state = await self.get_customer_state(tenant)
        if state is None:
            logger.info(f"Customer {tenant} not found in Polar")
            return 0
        meter = self._find_meter(state, meter_name)
        if meter is None:
            logger.warning(f"Meter {meter_name} not active for {tenant}")
            return 0
        balance = int(meter.get("balance") or 0)
        if balance < 0:
            logger.warning(f"Negative {meter_name} balance for {tenant}: {balance}")
        return balance

    async def list_meter_balances(self, tenant: str) -> List[Dict[str, Any]]:
        state = await self.get_customer_state(tenant)
        if state is None:
            return []
        balances = []
        for meter_name in METER_NAMES:
            meter = self._find_meter(state, meter_name)
            if meter is None:
                continue
            balances.append({
                "meter_name": meter_name,
                "meter_id": meter.get("meter_id"),
                "consumed_units": meter.get("consumed_units", 0),
                "credited_units": meter.get("credited_units", 0),
                "balance": meter.get("balance", 0),
            })
        return balances

    async def ingest_usage_event(self, event: Dict[str, Any]) -> None:
        async def _post() -> None:
            async with httpx.AsyncClient(timeout=15.0) as client:
                response = await client.post(
                    f"{self.api_url}/events/ingest",
                    headers=self.headers,
                    json={"events": [event]},
                )
            raise_for_status("polar", response)

        await with_retry(_post, label="polar.ingest")

    async def has_benefit(self, tenant: str, benefit_id: str) -> bool:
        state = await self.get_customer_state(tenant)
        if state is None:
            return False
        return any(
            grant.get("benefit_id") == benefit_id
            for grant in state.get("granted_benefits") or []
        )


async def _check_benefit(billing: BillingClient, tenant: str, benefit_id: str, benefit_type: str) -> bool:
    if not benefit_id:
        logger.error(f"{benefit_type} benefit id not configured, denying access")
        return False
    started = time.time()
    try:
        granted = await billing.has_benefit(tenant, benefit_id)
    except Exception as e:
        logger.error(f"Error checking {benefit_type} benefit for {tenant}: {e}")
        return False
    logger.info(
        f"Benefit check {benefit_type} for {tenant}: {'granted' if granted else 'not granted'} "
        f"({(time.time() - started) * 1000:.0f}ms)"
    )
    return granted


async def check_email_communication_benefit(billing: BillingClient, tenant: str) -> bool:
    """Confirmation, rejection and comment emails."""
    return await _check_benefit(
        billing, tenant, get_settings().email_communication_benefit_id, "email_communication"
    )


async def check_ai_screening_benefit(billing: BillingClient, tenant: str) -> bool:
    """AI screening interview invitations."""
    return await _check_benefit(
        billing, tenant, get_settings().ai_screening_benefit_id, "ai_screening"
    )


_billing_client: Optional[PolarBillingClient] = None


def get_billing_client() -> PolarBillingClient:
    """Get the Polar client singleton."""
    global _billing_client
    if _billing_client is None:
        _billing_client = PolarBillingClient()
    return _billing_client
