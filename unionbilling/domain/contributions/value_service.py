"""Contribution value service - pricing an awaiting contribution and issuing its invoice"""

import logging
import math
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union

from fastapi import BackgroundTasks
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models import ContributionStatus, Employer, EmployerContribution
from .audit import PortalAuditLog
from .errors import (
    InvalidStateError,
    InvalidValueError,
    NotFoundError,
    PersistenceError,
    ProviderError,
)
from .lytex_service import LytexService
from .notifications import ManagerNotifier
from .portal_access import InternalAdmin, PortalContext, PublicToken
from .repository import ContributionRepository
from .schemas import IssuedInvoice, Payer, PayerAddress

logger = logging.getLogger(__name__)

MONTH_NAMES = [
    "Janeiro",
    "Fevereiro",
    "Março",
    "Abril",
    "Maio",
    "Junho",
    "Julho",
    "Agosto",
    "Setembro",
    "Outubro",
    "Novembro",
    "Dezembro",
]

DEFAULT_TYPE_NAME = "Contribuição"

# Largest amount the Integer value/paid_value columns hold (32-bit signed)
MAX_VALUE_CENTS = 2_147_483_647


def normalize_value_cents(value: Union[int, float, str, None]) -> int:
    """Round a submitted value (cents) half-up; it must end up a positive integer"""
    if value is None or isinstance(value, bool):
        raise InvalidValueError("contribution_id e value são obrigatórios")
    if isinstance(value, float) and not math.isfinite(value):
        raise InvalidValueError("Valor deve ser maior que zero")

    try:
        amount = Decimal(str(value))
    except InvalidOperation as e:
        raise InvalidValueError("Valor inválido") from e
    if not amount.is_finite():
        raise InvalidValueError("Valor deve ser maior que zero")

    cents = int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    if cents <= 0:
        raise InvalidValueError("Valor deve ser maior que zero")
    if cents > MAX_VALUE_CENTS:
        raise InvalidValueError("Valor excede o limite permitido")
    return cents


def describe_contribution(contribution: EmployerContribution) -> str:
    """'<type> - <Month>/<Year>' line shown on the invoice"""
    type_name = contribution.contribution_type.name if contribution.contribution_type else None
    month_name = MONTH_NAMES[contribution.competence_month - 1]
    return f"{type_name or DEFAULT_TYPE_NAME} - {month_name}/{contribution.competence_year}"


def payer_from_employer(employer: Employer) -> Payer:
    address = None
    if all(
        [
            employer.address_street,
            employer.address_zone,
            employer.address_city,
            employer.address_state,
            employer.address_zip,
        ]
    ):
        address = PayerAddress(
            street=employer.address_street,
            number=employer.address_number or "S/N",
            complement=employer.address_complement,
            zone=employer.address_zone,
            city=employer.address_city,
            state=employer.address_state,
            zip=employer.address_zip,
        )
    return Payer(
        name=employer.name,
        tax_id=employer.cnpj,
        email=employer.email,
        phone=employer.phone,
        address=address,
    )


class ContributionValueService:
    """Service layer for setting contribution values"""

    PERSIST_ATTEMPTS = 3

    def __init__(
        self,
        db: Session,
        lytex: LytexService,
        notifier: Optional[ManagerNotifier] = None,
        audit: Optional[PortalAuditLog] = None,
    ):
        self.db = db
        self.repo = ContributionRepository()
        self.lytex = lytex
        self.notifier = notifier or ManagerNotifier()
        self.audit = audit or PortalAuditLog(db)

    async def assign_value(
        self,
        contribution_id: Optional[str],
        value: Union[int, float, str, None],
        portal_context: PortalContext,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        background_tasks: Optional[BackgroundTasks] = None,
    ) -> Optional[str]:
        """
        Price an awaiting_value contribution and issue its Lytex invoice.

        Local checks (value, existence, status, portal authorization) run
        before any provider call. Returns the invoice URL. With
        background_tasks the manager notification runs after the response.
        """
        if not contribution_id:
            raise InvalidValueError("contribution_id e value são obrigatórios")
        value_cents = normalize_value_cents(value)

        contribution = self.repo.get_with_relations(self.db, contribution_id)
        if not contribution:
            logger.warning(f"Contribution not found: {contribution_id}")
            raise NotFoundError("Contribuição não encontrada")

        if contribution.status != ContributionStatus.AWAITING_VALUE.value:
            raise InvalidStateError("Apenas contribuições aguardando valor podem ser alteradas")

        portal_context.authorize(self.db, contribution)

        # Snapshot everything needed after the write, before commit expires the instance
        payer = payer_from_employer(contribution.employer)
        clinic = contribution.clinic
        clinic_name = clinic.name if clinic else None
        manager_email = clinic.contribution_notification_email if clinic else None
        description = describe_contribution(contribution)
        type_name = contribution.contribution_type.name if contribution.contribution_type else DEFAULT_TYPE_NAME
        competence = f"{contribution.competence_month:02d}/{contribution.competence_year}"
        due_date = contribution.due_date
        employer_id = contribution.employer_id

        invoice = await self.lytex.create_invoice(
            payer=payer,
            amount_cents=value_cents,
            due_date=due_date,
            description=description,
            reference_id=contribution.id,
        )

        applied = self._persist(contribution_id, value_cents, invoice)
        if not applied:
            await self._discard_orphan_invoice(contribution_id, invoice)
            raise InvalidStateError("Apenas contribuições aguardando valor podem ser alteradas")

        logger.info(
            f"✅ Contribution {contribution_id} priced at {value_cents} cents, invoice {invoice.invoice_id}"
        )

        if not isinstance(portal_context, InternalAdmin):
            self.audit.log_portal_action(
                portal_type=portal_context.portal_type.value,
                portal_id=portal_context.portal_id,
                action="set_value",
                ip_address=ip_address,
                user_agent=user_agent,
                details={
                    "contribution_id": contribution_id,
                    "employer_id": employer_id,
                    "value": value_cents,
                },
            )

        if isinstance(portal_context, PublicToken) and manager_email:
            notification = {
                "email": manager_email,
                "clinic_name": clinic_name,
                "employer": payer,
                "contribution_type": type_name,
                "competence": competence,
                "due_date": due_date,
                "value_cents": value_cents,
                "invoice_url": invoice.invoice_url,
            }
            if background_tasks is not None:
                background_tasks.add_task(self.notifier.notify_manager, **notification)
            else:
                await self.notifier.notify_manager(**notification)

        return invoice.invoice_url

    async def cancel_contribution(self, contribution_id: str) -> None:
        """Cancel the Lytex invoice of an open contribution and mark it cancelled"""
        contribution = self.repo.get_with_relations(self.db, contribution_id)
        if not contribution:
            raise NotFoundError("Contribuição não encontrada")
        if contribution.status not in (ContributionStatus.PENDING.value, ContributionStatus.OVERDUE.value):
            raise InvalidStateError("Apenas contribuições pendentes ou vencidas podem ser canceladas")

        if contribution.lytex_invoice_id:
            await self.lytex.cancel_invoice(contribution.lytex_invoice_id)

        if not self.repo.mark_cancelled(self.db, contribution_id):
            logger.warning(f"⚠️ Contribution {contribution_id} changed status while being cancelled")
            raise InvalidStateError("Apenas contribuições pendentes ou vencidas podem ser canceladas")
        logger.info(f"🚫 Contribution {contribution_id} cancelled")

    def _persist(self, contribution_id: str, value_cents: int, invoice: IssuedInvoice) -> bool:
        """
        Write value + invoice fields, retrying transient failures with the same invoice.

        Returns False if the contribution left awaiting_value in the meantime.
        """
        last_error = None
        for attempt in range(1, self.PERSIST_ATTEMPTS + 1):
            try:
                return self.repo.assign_value_and_invoice(self.db, contribution_id, value_cents, invoice)
            except SQLAlchemyError as e:
                self.db.rollback()
                last_error = e
                logger.warning(
                    f"⚠️ Saving invoice {invoice.invoice_id} for contribution {contribution_id} failed "
                    f"(attempt {attempt}/{self.PERSIST_ATTEMPTS}): {e}"
                )
            except Exception as e:
                # Not transient (e.g. driver-level conversion errors); do not retry
                self.db.rollback()
                last_error = e
                break

        logger.error(
            f"🚨 Lytex invoice {invoice.invoice_id} was issued for contribution {contribution_id} "
            f"({value_cents} cents) but could not be saved locally: {last_error}. "
            f"Record the invoice manually; do not issue a new one."
        )
        raise PersistenceError(
            "Erro ao salvar dados",
            contribution_id=contribution_id,
            lytex_invoice_id=invoice.invoice_id,
        ) from last_error

    async def _discard_orphan_invoice(self, contribution_id: str, invoice: IssuedInvoice) -> None:
        logger.error(
            f"🚨 Contribution {contribution_id} was priced concurrently; "
            f"invoice {invoice.invoice_id} is orphaned, cancelling it"
        )
        try:
            await self.lytex.cancel_invoice(invoice.invoice_id)
        except ProviderError as e:
            logger.error(
                f"❌ Could not cancel orphan invoice {invoice.invoice_id} for contribution "
                f"{contribution_id}: {e}. Cancel it manually in Lytex."
            )
