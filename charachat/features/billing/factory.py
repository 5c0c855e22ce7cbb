"""Payment provider lookup by name."""
from typing import Union

from charachat.features.billing.paypal_provider import PayPalProvider
from charachat.features.billing.provider import PaymentProvider, PaymentProviderError
from charachat.features.billing.stripe_provider import StripeProvider
from charachat.models.plan import PaymentProviderName


def get_payment_provider(name: Union[PaymentProviderName, str]) -> PaymentProvider:
    """
    Instantiate the provider for name.

    Raises:
        PaymentProviderError: unknown provider or provider not configured
    """
    try:
        provider = PaymentProviderName(name)
    except ValueError:
        raise PaymentProviderError(f"Unknown payment provider: {name}")

    if provider == PaymentProviderName.STRIPE:
        return StripeProvider()
    return PayPalProvider()
