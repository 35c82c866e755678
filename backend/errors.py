"""Engine error taxonomy.

Denials (limit reached, feature gated, access blocked) are NOT errors: they are
returned as CheckResult / BlockedResult / AccessVerdict values. Exceptions here
cover the cases where the engine cannot produce an answer at all.

HTTP mapping used by the routes:
- Unauthenticated        -> 401
- ValidationFailure      -> 422
- PaymentWindowExpired   -> 410
- GatewayFailure         -> 502
- NotProvisioned is remediated internally (initialize) and never surfaces
"""
from typing import List, Optional


class EngineError(Exception):
    """Base exception for subscription engine failures."""
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotProvisioned(EngineError):
    """The tenant has no subscription record yet (backend 404)."""
    status_code = 404


class Unauthenticated(EngineError):
    """No bearer token, or the backend rejected it."""
    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class GatewayFailure(EngineError):
    """The backend or payment gateway returned an error or was unreachable."""
    status_code = 502

    def __init__(self, message: str, retryable: bool = True, upstream_status: Optional[int] = None):
        self.retryable = retryable
        self.upstream_status = upstream_status
        super().__init__(message)


class PaymentWindowExpired(EngineError):
    """A PIX/Boleto intent passed its expiry; start a new payment."""
    status_code = 410

    def __init__(self, intent_id: str):
        self.intent_id = intent_id
        super().__init__(f"Payment window expired for intent {intent_id}. Start a new payment.")


class ValidationFailure(EngineError):
    """Required input missing before any network call was made."""
    status_code = 422

    def __init__(self, missing_fields: List[str]):
        self.missing_fields = list(missing_fields)
        super().__init__(f"Missing required fields: {', '.join(self.missing_fields)}")
