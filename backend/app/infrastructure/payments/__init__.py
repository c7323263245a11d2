"""
Payments Infrastructure Module

Stripe webhook verification, event normalization and subscription commands.
"""

from app.infrastructure.payments.stripe_service import (
    StripeService,
    StripeServiceError,
    get_stripe_service,
    normalize_event,
)

__all__ = ["StripeService", "StripeServiceError", "get_stripe_service", "normalize_event"]
