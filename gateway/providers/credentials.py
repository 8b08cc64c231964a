"""Per-company processor credential lookup."""

from typing import Optional

from gateway.config import Settings
from gateway.engine.errors import ConfigurationError
from gateway.models.charge import ProviderCredentials
from gateway.models.enums import PaymentMethod


class CredentialResolver:
    """
    Resolves (provider, company_code) to a credential pair from loaded settings.

    Pure lookup: no I/O, no logging. A missing entry, or one with a blank id
    or secret, is reported as not found rather than as empty credentials.
    """

    def __init__(self, settings: Settings):
        self._settings = settings

    def lookup(self, provider: PaymentMethod, company_code: str) -> Optional[ProviderCredentials]:
        if provider is PaymentMethod.COBALT:
            entry = self._settings.cobalt.companies.get(company_code)
            pair = (entry.client_id, entry.client_secret) if entry else None
        elif provider is PaymentMethod.PAYPAL:
            entry = self._settings.paypal.companies.get(company_code)
            pair = (entry.client_id, entry.client_secret) if entry else None
        elif provider is PaymentMethod.YAPPY:
            merchant = self._settings.yappy.companies.get(company_code)
            pair = (merchant.merchant_id, merchant.secret_key) if merchant else None
        else:
            pair = None

        if pair is None or not pair[0]:
            return None
        # Yappy signs IPNs with the secret but can still create orders without it
        if provider is not PaymentMethod.YAPPY and not pair[1]:
            return None
        return ProviderCredentials(
            provider=provider,
            company_code=company_code,
            client_id=pair[0],
            client_secret=pair[1],
        )

    def resolve(self, provider: PaymentMethod, company_code: str) -> ProviderCredentials:
        credentials = self.lookup(provider, company_code)
        if credentials is None:
            raise ConfigurationError(
                f"No {provider.label} credentials configured for company {company_code!r}"
            )
        return credentials

    def companies(self, provider: PaymentMethod) -> list[str]:
        if provider is PaymentMethod.COBALT:
            return sorted(self._settings.cobalt.companies)
        if provider is PaymentMethod.PAYPAL:
            return sorted(self._settings.paypal.companies)
        return sorted(self._settings.yappy.companies)
