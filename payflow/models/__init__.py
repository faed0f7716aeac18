from payflow.models.checkout import CheckoutSession
from payflow.models.payment import (
    PaymentGatewayConfig,
    PaymentRefund,
    PaymentTransaction,
    PaymentWebhookEvent,
)
