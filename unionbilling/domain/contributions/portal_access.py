"""
Portal contexts

Each channel that can set a contribution value is its own variant with its
own authorization check. Requests without a recognized portal type are
internal/admin calls and skip the check.
"""

from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy.orm import Session

from ...models import EmployerContribution, PortalType
from .errors import ForbiddenError
from .repository import ContributionRepository


@dataclass(frozen=True)
class PublicToken:
    token: str
    portal_type = PortalType.PUBLIC_TOKEN

    @property
    def portal_id(self) -> str:
        return self.token

    def authorize(self, db: Session, contribution: EmployerContribution) -> None:
        if not contribution.public_access_token or contribution.public_access_token != self.token:
            raise ForbiddenError("Token de acesso inválido")


@dataclass(frozen=True)
class EmployerPortal:
    employer_id: str
    portal_type = PortalType.EMPLOYER

    @property
    def portal_id(self) -> str:
        return self.employer_id

    def authorize(self, db: Session, contribution: EmployerContribution) -> None:
        if not self.employer_id or contribution.employer_id != self.employer_id:
            raise ForbiddenError("Você não tem permissão para acessar esta contribuição")


@dataclass(frozen=True)
class AccountingOfficePortal:
    accounting_office_id: str
    portal_type = PortalType.ACCOUNTING_OFFICE

    @property
    def portal_id(self) -> str:
        return self.accounting_office_id

    def authorize(self, db: Session, contribution: EmployerContribution) -> None:
        linked = bool(self.accounting_office_id) and ContributionRepository.has_accounting_office_link(
            db, self.accounting_office_id, contribution.employer_id
        )
        if not linked:
            raise ForbiddenError("Você não tem permissão para acessar esta contribuição")


@dataclass(frozen=True)
class InternalAdmin:
    portal_type = None
    portal_id = None

    def authorize(self, db: Session, contribution: EmployerContribution) -> None:
        return None


PortalContext = Union[PublicToken, EmployerPortal, AccountingOfficePortal, InternalAdmin]

_VARIANTS = {
    PortalType.PUBLIC_TOKEN.value: PublicToken,
    PortalType.EMPLOYER.value: EmployerPortal,
    PortalType.ACCOUNTING_OFFICE.value: AccountingOfficePortal,
}


def portal_context_from_request(portal_type: Optional[str], portal_id: Optional[str]) -> PortalContext:
    """Map the (portal_type, portal_id) pair sent by the UI to a portal context"""
    variant = _VARIANTS.get(portal_type or "")
    if variant is None:
        return InternalAdmin()
    # A portal caller without an identity never falls back to admin access;
    # an empty identity fails every portal check.
    return variant(portal_id or "")
