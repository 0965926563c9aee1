"""Contribution repository - Database operations for employer contributions"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session, joinedload

from ...models import (
    AccountingOfficeEmployer,
    ContributionStatus,
    EmployerContribution,
    LytexConciliationLog,
    LytexSyncLog,
)
from .schemas import IssuedInvoice


class ContributionRepository:
    """Repository for contribution database operations"""

    @staticmethod
    def get_with_relations(db: Session, contribution_id: str) -> Optional[EmployerContribution]:
        """Get a contribution with employer, contribution type and clinic loaded"""
        return (
            db.query(EmployerContribution)
            .options(
                joinedload(EmployerContribution.employer),
                joinedload(EmployerContribution.contribution_type),
                joinedload(EmployerContribution.clinic),
            )
            .filter(EmployerContribution.id == contribution_id)
            .first()
        )

    @staticmethod
    def has_accounting_office_link(db: Session, accounting_office_id: str, employer_id: str) -> bool:
        """Check whether an accounting office may act for an employer"""
        return (
            db.query(AccountingOfficeEmployer.id)
            .filter(
                AccountingOfficeEmployer.accounting_office_id == accounting_office_id,
                AccountingOfficeEmployer.employer_id == employer_id,
            )
            .first()
            is not None
        )

    @staticmethod
    def assign_value_and_invoice(
        db: Session, contribution_id: str, value_cents: int, invoice: IssuedInvoice
    ) -> bool:
        """
        Set value, invoice fields and status=pending in one statement.

        Only applies while the row is still awaiting_value; returns False when
        another request priced the contribution first.
        """
        updated = (
            db.query(EmployerContribution)
            .filter(
                EmployerContribution.id == contribution_id,
                EmployerContribution.status == ContributionStatus.AWAITING_VALUE.value,
            )
            .update(
                {
                    EmployerContribution.value: value_cents,
                    EmployerContribution.status: ContributionStatus.PENDING.value,
                    EmployerContribution.lytex_invoice_id: invoice.invoice_id,
                    EmployerContribution.lytex_invoice_url: invoice.invoice_url,
                    EmployerContribution.lytex_boleto_barcode: invoice.boleto_barcode,
                    EmployerContribution.lytex_boleto_digitable_line: invoice.boleto_digitable_line,
                    EmployerContribution.lytex_pix_code: invoice.pix_code,
                    EmployerContribution.lytex_pix_qrcode: invoice.pix_qrcode,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        return updated == 1

    @staticmethod
    def list_syncable(db: Session, clinic_id: str) -> list[EmployerContribution]:
        """Contributions with a Lytex invoice that may still change"""
        return (
            db.query(EmployerContribution)
            .filter(
                EmployerContribution.clinic_id == clinic_id,
                EmployerContribution.lytex_invoice_id.isnot(None),
                EmployerContribution.is_reconciled.is_(False),
                EmployerContribution.status != ContributionStatus.CANCELLED.value,
            )
            .order_by(EmployerContribution.competence_year, EmployerContribution.competence_month)
            .all()
        )

    @staticmethod
    def pending_reconciliation_ids(db: Session, clinic_id: str) -> list[str]:
        """Paid, unreconciled, non-divergent contributions"""
        rows = (
            db.query(EmployerContribution.id)
            .filter(
                EmployerContribution.clinic_id == clinic_id,
                EmployerContribution.status == ContributionStatus.PAID.value,
                EmployerContribution.is_reconciled.is_(False),
                EmployerContribution.has_divergence.is_(False),
            )
            .all()
        )
        return [row[0] for row in rows]

    @staticmethod
    def update_contribution(db: Session, contribution: EmployerContribution, **updates) -> EmployerContribution:
        """Update a contribution with provided fields"""
        for key, value in updates.items():
            if hasattr(contribution, key):
                setattr(contribution, key, value)

        db.commit()
        db.refresh(contribution)
        return contribution

    @staticmethod
    def mark_divergent(db: Session, contribution_id: str) -> int:
        updated = (
            db.query(EmployerContribution)
            .filter(EmployerContribution.id == contribution_id)
            .update({EmployerContribution.has_divergence: True}, synchronize_session=False)
        )
        db.commit()
        return updated

    @staticmethod
    def mark_reconciled(
        db: Session,
        contribution_ids: list[str],
        reconciled_by: str,
        timestamp: datetime,
        require_clean: bool = False,
    ) -> int:
        """
        Flag contributions as reconciled in one statement.

        Rows already reconciled are left alone so reconciled_at/by keep the
        first transition. With require_clean only paid, non-divergent rows match.
        """
        query = db.query(EmployerContribution).filter(
            EmployerContribution.id.in_(contribution_ids),
            EmployerContribution.is_reconciled.is_(False),
        )
        if require_clean:
            query = query.filter(
                EmployerContribution.status == ContributionStatus.PAID.value,
                EmployerContribution.has_divergence.is_(False),
            )

        updated = query.update(
            {
                EmployerContribution.is_reconciled: True,
                EmployerContribution.reconciled_at: timestamp,
                EmployerContribution.reconciled_by: reconciled_by,
                EmployerContribution.has_divergence: False,
            },
            synchronize_session=False,
        )
        db.commit()
        return updated

    @staticmethod
    def mark_cancelled(db: Session, contribution_id: str) -> int:
        updated = (
            db.query(EmployerContribution)
            .filter(
                EmployerContribution.id == contribution_id,
                EmployerContribution.status.in_(
                    [ContributionStatus.PENDING.value, ContributionStatus.OVERDUE.value]
                ),
            )
            .update(
                {EmployerContribution.status: ContributionStatus.CANCELLED.value},
                synchronize_session=False,
            )
        )
        db.commit()
        return updated

    # ------------------------------------------------------------------
    # Sync logs
    # ------------------------------------------------------------------

    @staticmethod
    def create_sync_log(db: Session, clinic_id: Optional[str], sync_type: str) -> LytexSyncLog:
        sync_log = LytexSyncLog(
            clinic_id=clinic_id,
            sync_type=sync_type,
            status="running",
            started_at=datetime.utcnow(),
        )
        db.add(sync_log)
        db.commit()
        db.refresh(sync_log)
        return sync_log

    @staticmethod
    def finish_sync_log(db: Session, sync_log: LytexSyncLog, status: str, **counters) -> LytexSyncLog:
        sync_log.status = status
        sync_log.completed_at = datetime.utcnow()
        for key, value in counters.items():
            setattr(sync_log, key, value)
        db.commit()
        db.refresh(sync_log)
        return sync_log

    @staticmethod
    def add_conciliation_log(db: Session, **fields) -> LytexConciliationLog:
        entry = LytexConciliationLog(**fields)
        db.add(entry)
        db.commit()
        return entry
