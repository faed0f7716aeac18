class CheckoutError(Exception):
    """Base class for checkout and payment failures surfaced to callers.

    Subclasses carry the HTTP status and error code used by the API error
    envelope, so services stay free of FastAPI imports.
    """

    status_code: int = 400
    code: str = "checkout_error"
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidCheckoutInput(CheckoutError):
    status_code = 400
    code = "invalid_checkout_input"


class InvalidStateTransition(CheckoutError):
    status_code = 409
    code = "invalid_state_transition"


class SessionExpired(CheckoutError):
    status_code = 410
    code = "session_expired"


class ConcurrentModification(CheckoutError):
    status_code = 409
    code = "concurrent_modification"
    retryable = True


class GatewayUnavailable(CheckoutError):
    status_code = 503
    code = "gateway_unavailable"
    retryable = True


class PaymentInitiationFailed(CheckoutError):
    status_code = 402
    code = "payment_initiation_failed"


class GatewayNotConfigured(CheckoutError):
    status_code = 404
    code = "gateway_not_configured"


class WebhookAuthenticationFailed(CheckoutError):
    status_code = 401
    code = "webhook_authentication_failed"


class UnsupportedOperation(CheckoutError):
    status_code = 422
    code = "unsupported_operation"


class NoMatchingTransaction(CheckoutError):
    status_code = 404
    code = "no_matching_transaction"


class CheckoutSessionNotFound(CheckoutError):
    status_code = 404
    code = "checkout_session_not_found"


class RefundNotFound(CheckoutError):
    status_code = 404
    code = "refund_not_found"


class WebhookEventNotFound(CheckoutError):
    status_code = 404
    code = "webhook_event_not_found"
