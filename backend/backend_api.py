"""
Backend-of-record API client.

All subscription state lives in the ERP backend; this module is the only place
that talks to it. Responses use the envelope {success, data, error}.

Status mapping:
- 401/403                    -> Unauthenticated
- 404 on subscription/current -> NotProvisioned (caller initializes)
- 5xx, 429, timeouts, network -> GatewayFailure(retryable=True)
- other 4xx, success=false    -> GatewayFailure(retryable=False)
"""
import os
import logging
import httpx
from typing import Any, Dict, Optional, Union

from errors import GatewayFailure, NotProvisioned, Unauthenticated
from models import (
    BillingCycle, BillingDetails, CardCheckoutResult, PaymentIntent,
    PaymentMethod, PlanTier, SubscriptionRecord,
)

logger = logging.getLogger(__name__)

BACKEND_API_URL = os.getenv("BACKEND_API_URL", "http://localhost:8001/api")
BACKEND_API_TIMEOUT = float(os.getenv("BACKEND_API_TIMEOUT", "10.0"))

# Keys of the payment intent response that are not channel payload
_INTENT_CORE_KEYS = {"success", "paymentIntentId", "intentId", "id", "amount", "expiresAt", "clientSecret"}


class BackendApiClient:
    """Bearer-authenticated client for one tenant session."""

    def __init__(
        self,
        token: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not token:
            raise Unauthenticated()
        self.token = token
        self.base_url = (base_url or BACKEND_API_URL).rstrip("/") + "/"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or BACKEND_API_TIMEOUT,
            headers={"Authorization": f"Bearer {token}"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        missing_is_unprovisioned: bool = False,
    ) -> Any:
        try:
            response = await self._client.request(method, path, json=payload)
        except httpx.TimeoutException:
            logger.warning(f"Backend API timeout: {method} {path}")
            raise GatewayFailure("Backend API timeout", retryable=True)
        except httpx.HTTPError as e:
            logger.warning(f"Backend API unreachable: {method} {path}: {e}")
            raise GatewayFailure(f"Backend API unreachable: {e}", retryable=True)

        if response.status_code in (401, 403):
            logger.error(f"Backend rejected credentials: {method} {path} ({response.status_code})")
            raise Unauthenticated()

        if response.status_code == 404 and missing_is_unprovisioned:
            raise NotProvisioned("No subscription provisioned for tenant")

        try:
            body = response.json()
        except ValueError:
            body = {}

        failed = response.status_code >= 400 or (isinstance(body, dict) and body.get("success") is False)
        if failed:
            message = (body.get("error") if isinstance(body, dict) else None) or f"HTTP {response.status_code}"
            retryable = response.status_code >= 500 or response.status_code == 429
            if retryable:
                logger.warning(f"Backend API error (retryable): {method} {path}: {message}")
            else:
                logger.error(f"Backend API error: {method} {path}: {message}")
            raise GatewayFailure(message, retryable=retryable, upstream_status=response.status_code)

        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    # -------------------------------------------------------------------------
    # Subscription
    # -------------------------------------------------------------------------

    async def get_current_subscription(self) -> SubscriptionRecord:
        data = await self._request("GET", "subscription/current", missing_is_unprovisioned=True)
        return SubscriptionRecord.model_validate(data)

    async def initialize_subscription(self) -> SubscriptionRecord:
        data = await self._request("POST", "subscription/initialize")
        return SubscriptionRecord.model_validate(data)

    async def increment_usage(self, usage_type: str, amount: int = 1) -> SubscriptionRecord:
        data = await self._request(
            "POST", "subscription/increment-usage", {"type": usage_type, "amount": amount}
        )
        return SubscriptionRecord.model_validate(data)

    async def request_downgrade(
        self, plan_id: Union[PlanTier, str], billing_cycle: Union[BillingCycle, str]
    ) -> Dict[str, Any]:
        data = await self._request(
            "POST",
            "subscription/downgrade",
            {"newPlanId": PlanTier(plan_id).value, "billingCycle": BillingCycle(billing_cycle).value},
        )
        return data if isinstance(data, dict) else {}

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    async def create_checkout_session(
        self,
        plan_id: Union[PlanTier, str],
        billing_cycle: Union[BillingCycle, str],
        frontend_url: str,
    ) -> CardCheckoutResult:
        data = await self._request(
            "POST",
            "stripe/create-checkout-session",
            {
                "planId": PlanTier(plan_id).value,
                "billingCycle": BillingCycle(billing_cycle).value,
                "frontendUrl": frontend_url,
            },
        )
        return CardCheckoutResult.model_validate(data)

    async def create_pix_payment(
        self, plan_id: Union[PlanTier, str], billing_cycle: Union[BillingCycle, str]
    ) -> PaymentIntent:
        payload = {"planId": PlanTier(plan_id).value, "billingCycle": BillingCycle(billing_cycle).value}
        data = await self._request("POST", "stripe/create-pix-payment", payload)
        return self._to_intent(data, PaymentMethod.PIX, plan_id, billing_cycle)

    async def create_boleto_payment(
        self,
        plan_id: Union[PlanTier, str],
        billing_cycle: Union[BillingCycle, str],
        billing_details: BillingDetails,
    ) -> PaymentIntent:
        payload = {
            "planId": PlanTier(plan_id).value,
            "billingCycle": BillingCycle(billing_cycle).value,
            "billingDetails": {
                "name": billing_details.name,
                "email": billing_details.email,
                "taxId": billing_details.tax_id,
            },
        }
        data = await self._request("POST", "stripe/create-boleto-payment", payload)
        return self._to_intent(data, PaymentMethod.BOLETO, plan_id, billing_cycle)

    async def check_payment_status(self, intent_id: str) -> str:
        data = await self._request("POST", "stripe/check-payment-status", {"paymentIntentId": intent_id})
        return (data or {}).get("status", "pending")

    def _to_intent(
        self,
        data: Dict[str, Any],
        channel: PaymentMethod,
        plan_id: Union[PlanTier, str],
        billing_cycle: Union[BillingCycle, str],
    ) -> PaymentIntent:
        return PaymentIntent.model_validate({
            **{k: v for k, v in data.items() if k in _INTENT_CORE_KEYS},
            "amount": data.get("amount", 0),
            "channel": channel,
            "channelData": {k: v for k, v in data.items() if k not in _INTENT_CORE_KEYS},
            "planId": PlanTier(plan_id),
            "billingCycle": BillingCycle(billing_cycle),
        })
