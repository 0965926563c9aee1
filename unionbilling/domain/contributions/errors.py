"""Contribution billing errors - each kind maps to one HTTP status"""

from typing import Optional


class ContributionBillingError(Exception):
    """Base class for every error surfaced by the billing workflow"""

    status_code = 500
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidValueError(ContributionBillingError):
    status_code = 400


class InvalidStateError(ContributionBillingError):
    status_code = 400


class ForbiddenError(ContributionBillingError):
    status_code = 403


class NotFoundError(ContributionBillingError):
    status_code = 404


class ProviderError(ContributionBillingError):
    """Failure talking to Lytex"""

    retryable = True

    def __init__(self, message: str, provider_status: Optional[int] = None):
        super().__init__(message)
        self.provider_status = provider_status


class AuthenticationError(ProviderError):
    pass


class ProviderUnavailableError(ProviderError):
    status_code = 503


class InvoiceCreationError(ProviderError):
    pass


class InvoiceLookupError(ProviderError):
    pass


class InvoiceCancellationError(ProviderError):
    pass


class PersistenceError(ContributionBillingError):
    """Local write failed after the provider already issued the invoice"""

    retryable = True

    def __init__(self, message: str, contribution_id: str, lytex_invoice_id: Optional[str] = None):
        super().__init__(message)
        self.contribution_id = contribution_id
        self.lytex_invoice_id = lytex_invoice_id
