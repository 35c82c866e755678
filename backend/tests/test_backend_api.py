"""
Backend API client tests (httpx.MockTransport).
Envelope unwrapping, status-to-error mapping and request payload shapes.
"""
import json

import httpx
import pytest

from backend_api import BackendApiClient
from errors import GatewayFailure, NotProvisioned, Unauthenticated
from models import BillingCycle, BillingDetails, PaymentMethod, PlanTier, SubscriptionStatus

SUBSCRIPTION_BODY = {
    "id": "sub_42",
    "userId": "user_7",
    "planId": "intermediario",
    "status": "active",
    "billingCycle": "quarterly",
    "startDate": "2025-01-01T00:00:00Z",
    "currentPeriodStart": "2025-01-01T00:00:00Z",
    "currentPeriodEnd": "2025-04-01T00:00:00Z",
    "paymentMethod": "",
    "usage": {"salesOrders": 12, "purchaseOrders": 3, "invoices": 1, "transactions": 0, "storageMb": 10.5},
    "someFutureField": True,
}


def make_client(handler, token="tok_123"):
    return BackendApiClient(token, base_url="http://backend.test/api", transport=httpx.MockTransport(handler))


class TestEnvelope:
    @pytest.mark.asyncio
    async def test_current_subscription_parsed(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            seen["url"] = str(request.url)
            return httpx.Response(200, json={"success": True, "data": SUBSCRIPTION_BODY})

        client = make_client(handler)
        record = await client.get_current_subscription()
        await client.aclose()

        assert seen["auth"] == "Bearer tok_123"
        assert seen["url"] == "http://backend.test/api/subscription/current"
        assert record.tenant_id == "user_7"
        assert record.billing_cycle == BillingCycle.QUARTERLY
        assert record.payment_method is None
        assert record.usage.storage_mb == 10.5
        assert record.usage.users == 0
        assert record.current_period_end.tzinfo is not None

    @pytest.mark.asyncio
    async def test_trial_end_alias(self):
        body = dict(SUBSCRIPTION_BODY, status="trial", trialEnd="2025-01-15T00:00:00Z")
        client = make_client(lambda request: httpx.Response(200, json={"success": True, "data": body}))
        record = await client.initialize_subscription()
        assert record.status == SubscriptionStatus.TRIAL
        assert record.trial_end_date.day == 15


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_404_on_current_is_not_provisioned(self):
        client = make_client(lambda request: httpx.Response(404, json={"success": False, "error": "not found"}))
        with pytest.raises(NotProvisioned):
            await client.get_current_subscription()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [401, 403])
    async def test_auth_rejections(self, status_code):
        client = make_client(lambda request: httpx.Response(status_code))
        with pytest.raises(Unauthenticated):
            await client.get_current_subscription()

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        client = make_client(lambda request: httpx.Response(503, json={"success": False, "error": "maintenance"}))
        with pytest.raises(GatewayFailure) as exc:
            await client.check_payment_status("pi_1")
        assert exc.value.retryable is True
        assert exc.value.upstream_status == 503
        assert exc.value.message == "maintenance"

    @pytest.mark.asyncio
    async def test_client_error_is_not_retryable(self):
        client = make_client(lambda request: httpx.Response(400, json={"success": False, "error": "Invalid plan"}))
        with pytest.raises(GatewayFailure) as exc:
            await client.create_pix_payment(PlanTier.BASICO, BillingCycle.MONTHLY)
        assert exc.value.retryable is False

    @pytest.mark.asyncio
    async def test_success_false_with_200(self):
        client = make_client(lambda request: httpx.Response(200, json={"success": False, "error": "Downgrade not allowed"}))
        with pytest.raises(GatewayFailure) as exc:
            await client.request_downgrade(PlanTier.BASICO, BillingCycle.MONTHLY)
        assert exc.value.message == "Downgrade not allowed"

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(handler)
        with pytest.raises(GatewayFailure) as exc:
            await client.get_current_subscription()
        assert exc.value.retryable is True

    @pytest.mark.asyncio
    async def test_connection_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = make_client(handler)
        with pytest.raises(GatewayFailure) as exc:
            await client.get_current_subscription()
        assert exc.value.retryable is True

    def test_missing_token(self):
        with pytest.raises(Unauthenticated):
            BackendApiClient("")


class TestPayloads:
    @pytest.mark.asyncio
    async def test_pix_intent(self):
        sent = {}

        def handler(request):
            sent.update(json.loads(request.content))
            return httpx.Response(200, json={
                "success": True,
                "paymentIntentId": "pi_pix_1",
                "clientSecret": "secret",
                "pixQrCode": "00020126",
                "pixQrCodeUrl": "https://qr.example/1.png",
                "amount": 69.90,
                "expiresAt": 1741610400,
            })

        client = make_client(handler)
        intent = await client.create_pix_payment(PlanTier.INTERMEDIARIO, BillingCycle.MONTHLY)

        assert sent == {"planId": "intermediario", "billingCycle": "monthly"}
        assert intent.id == "pi_pix_1"
        assert intent.channel == PaymentMethod.PIX
        assert intent.expires_at.timestamp() == 1741610400
        assert intent.channel_data == {"pixQrCode": "00020126", "pixQrCodeUrl": "https://qr.example/1.png"}
        assert intent.plan_id == PlanTier.INTERMEDIARIO

    @pytest.mark.asyncio
    @pytest.mark.parametrize("id_key", ["intentId", "id"])
    async def test_intent_id_aliases(self, id_key):
        body = {"success": True, id_key: "pi_alias", "pixQrCode": "00020126", "amount": 49.9, "expiresAt": 1741610400}
        client = make_client(lambda request: httpx.Response(200, json=body))

        intent = await client.create_pix_payment(PlanTier.BASICO, BillingCycle.MONTHLY)

        assert intent.id == "pi_alias"
        assert intent.channel_data == {"pixQrCode": "00020126"}

    @pytest.mark.asyncio
    async def test_boleto_billing_details(self):
        sent = {}

        def handler(request):
            sent.update(json.loads(request.content))
            return httpx.Response(200, json={
                "success": True,
                "paymentIntentId": "pi_bol_1",
                "boletoNumber": "34191.79001",
                "boletoUrl": "https://boleto.example/1",
                "amount": 1055.04,
                "expiresAt": 1741869600,
            })

        client = make_client(handler)
        details = BillingDetails(name="Maria", email="maria@example.com", tax_id="12345678909")
        intent = await client.create_boleto_payment(PlanTier.AVANCADO, BillingCycle.YEARLY, details)

        assert sent["billingDetails"] == {"name": "Maria", "email": "maria@example.com", "taxId": "12345678909"}
        assert intent.channel == PaymentMethod.BOLETO
        assert intent.channel_data["boletoNumber"] == "34191.79001"

    @pytest.mark.asyncio
    async def test_checkout_session_outcomes(self):
        responses = [
            {"success": True, "upgraded": True, "message": "Plan upgraded"},
            {"success": True, "checkoutUrl": "https://checkout.example/s", "sessionId": "cs_1"},
        ]
        sent = []

        def handler(request):
            sent.append(json.loads(request.content))
            return httpx.Response(200, json=responses[len(sent) - 1])

        client = make_client(handler)
        upgraded = await client.create_checkout_session(PlanTier.AVANCADO, BillingCycle.MONTHLY, "https://app.example")
        redirect = await client.create_checkout_session(PlanTier.AVANCADO, "semiannual", "https://app.example")

        assert sent[0] == {"planId": "avancado", "billingCycle": "monthly", "frontendUrl": "https://app.example"}
        assert upgraded.upgraded is True
        assert upgraded.requires_redirect is False
        assert redirect.requires_redirect is True

    @pytest.mark.asyncio
    async def test_payment_status_and_usage(self):
        def handler(request):
            if request.url.path.endswith("check-payment-status"):
                assert json.loads(request.content) == {"paymentIntentId": "pi_1"}
                return httpx.Response(200, json={"success": True, "status": "succeeded", "amount": 69.9, "currency": "brl"})
            assert json.loads(request.content) == {"type": "salesOrders", "amount": 2}
            return httpx.Response(200, json={"success": True, "data": SUBSCRIPTION_BODY})

        client = make_client(handler)
        assert await client.check_payment_status("pi_1") == "succeeded"
        record = await client.increment_usage("salesOrders", 2)
        assert record.usage.sales_orders == 12
