"""
Receipt verifier protocol.

A verifier turns an opaque mobile store token (App Store receipt or Play
purchase token) into a normalized verification result. Verifiers never
touch subscription state; the billing service feeds the result to the
webhook reconciler.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol


@dataclass(frozen=True)
class ReceiptVerification:
    """Normalized store verification result."""
    valid: bool
    expiry_time: Optional[datetime]
    raw_status: str  # active, expired, canceled, pending, or store status code
    provider_subscription_id: Optional[str]  # original transaction id / purchase token
    product_id: Optional[str]
    account_id: Optional[str] = None  # appAccountToken / obfuscatedExternalAccountId


class ReceiptVerifier(Protocol):
    """
    Protocol for store receipt verification.

    Implementations must raise ExternalServiceError when the store cannot be
    reached, and return `valid=False` when the store rejects the token.
    """

    def verify(self, token: str, product_id: str) -> ReceiptVerification:
        ...
