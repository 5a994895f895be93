"""
Payment gateway protocol.

Defines the interface the billing service uses to talk to the card payment
gateway (Stripe). Business logic depends on this protocol only, so tests and
alternative gateways can be swapped in without touching the service.
"""
from typing import Any, Dict, Protocol

from commerce.models.tier import Tier


class PaymentGateway(Protocol):
    """
    Protocol for payment gateways.

    Implementations must handle:
    - Hosted checkout session creation
    - Tier changes on an existing gateway subscription
    - Gateway-side cancellation
    - Webhook signature verification and payload parsing
    """

    def create_checkout_session(self, user_id: str, tier: Tier, success_url: str, cancel_url: str) -> str:
        """
        Create a hosted checkout session for `tier`.

        Returns:
            Checkout session URL

        Raises:
            GatewayError: If session creation fails
        """
        ...

    def update_subscription_tier(self, provider_subscription_id: str, tier: Tier) -> None:
        """Switch the gateway subscription to `tier`'s price (prorated by the gateway)."""
        ...

    def cancel_subscription(self, provider_subscription_id: str, at_period_end: bool) -> None:
        """Cancel now, or flag the subscription to end with the current period."""
        ...

    def construct_event(self, payload: bytes, signature_header: str) -> Dict[str, Any]:
        """
        Verify the webhook signature and parse the event.

        Raises:
            InvalidSignatureError: If the signature does not match the payload
            MalformedEventError: If the payload is not valid JSON
        """
        ...


class GatewayError(Exception):
    """Gateway call failed. Mapped to ExternalServiceError at the service boundary."""
