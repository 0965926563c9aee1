"""Reconciliation service - converging local contributions with Lytex"""

import logging
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from ...models import ContributionStatus, EmployerContribution
from .errors import InvalidStateError, InvoiceLookupError, NotFoundError
from .lytex_service import LytexService
from .repository import ContributionRepository
from .schemas import InvoiceSnapshot

logger = logging.getLogger(__name__)

LYTEX_CANCELLED_STATUSES = {"canceled", "cancelled"}


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def diff_with_provider(
    contribution: EmployerContribution, snapshot: InvoiceSnapshot, today: date
) -> dict:
    """
    Field updates that bring a contribution in line with its Lytex invoice.

    The contribution value itself is never touched; a mismatch only raises
    has_divergence, and has_divergence is never cleared here.
    """
    updates = {}

    if snapshot.is_paid:
        if contribution.status != ContributionStatus.PAID.value:
            updates["status"] = ContributionStatus.PAID.value
        paid_at = _to_naive_utc(snapshot.paid_at)
        if paid_at is not None and contribution.paid_at != paid_at:
            updates["paid_at"] = paid_at
        if snapshot.paid_value is not None and contribution.paid_value != snapshot.paid_value:
            updates["paid_value"] = snapshot.paid_value
        if snapshot.payment_method and contribution.payment_method != snapshot.payment_method:
            updates["payment_method"] = snapshot.payment_method
        reported_amount = snapshot.paid_value
    else:
        if snapshot.status in LYTEX_CANCELLED_STATUSES:
            if contribution.status != ContributionStatus.CANCELLED.value:
                updates["status"] = ContributionStatus.CANCELLED.value
        elif contribution.status == ContributionStatus.PENDING.value:
            due_date = snapshot.due_date or contribution.due_date
            if snapshot.status == "overdue" or (due_date and due_date < today):
                updates["status"] = ContributionStatus.OVERDUE.value
        reported_amount = snapshot.total_value

    if reported_amount is not None and reported_amount != contribution.value:
        if not contribution.has_divergence:
            updates["has_divergence"] = True

    return updates


class ReconciliationService:
    """Service layer for Lytex status sync and reconciliation"""

    def __init__(self, db: Session, lytex: Optional[LytexService] = None):
        self.db = db
        self.repo = ContributionRepository()
        self.lytex = lytex

    def _apply(
        self,
        contribution: EmployerContribution,
        snapshot: InvoiceSnapshot,
        sync_log_id: Optional[int],
        today: date,
    ) -> Optional[str]:
        """Apply provider state to one contribution; returns 'updated', 'divergent' or None"""
        updates = diff_with_provider(contribution, snapshot, today)
        if not updates:
            return None

        previous_status = contribution.status
        invoice_id = contribution.lytex_invoice_id
        result = "divergent" if updates.get("has_divergence") else "updated"
        reason = None
        if result == "divergent":
            reported = snapshot.paid_value if snapshot.is_paid else snapshot.total_value
            reason = f"Lytex reports {reported} cents, expected {contribution.value}"
            logger.warning(f"⚠️ Divergence on contribution {contribution.id} (invoice {invoice_id}): {reason}")

        flag_divergence = updates.pop("has_divergence", False)
        if updates:
            self.repo.update_contribution(self.db, contribution, **updates)
        if flag_divergence:
            self.repo.mark_divergent(self.db, contribution.id)
        self.repo.add_conciliation_log(
            self.db,
            sync_log_id=sync_log_id,
            contribution_id=contribution.id,
            lytex_invoice_id=invoice_id,
            previous_status=previous_status,
            new_status=contribution.status,
            lytex_paid_at=_to_naive_utc(snapshot.paid_at),
            lytex_paid_value=snapshot.paid_value,
            lytex_payment_method=snapshot.payment_method,
            conciliation_result=result,
            conciliation_reason=reason,
        )
        return result

    async def sync_pending(self, clinic_id: str) -> dict:
        """
        Pull invoice status from Lytex for every open contribution of a clinic.

        Returns counters; ``updated`` is the number of contributions whose
        local state changed.
        """
        contributions = self.repo.list_syncable(self.db, clinic_id)
        sync_log = self.repo.create_sync_log(self.db, clinic_id, "sync_all_pending")
        logger.info(f"🔄 Syncing {len(contributions)} Lytex invoices for clinic {clinic_id}")

        today = date.today()
        updated = divergent = failed = 0
        failures = []

        try:
            for contribution in contributions:
                invoice_id = contribution.lytex_invoice_id
                try:
                    snapshot = await self.lytex.get_invoice(invoice_id)
                except InvoiceLookupError as e:
                    failed += 1
                    failures.append({"contribution_id": contribution.id, "invoice_id": invoice_id, "error": str(e)})
                    logger.warning(f"⚠️ Skipping contribution {contribution.id}: {e}")
                    continue

                result = self._apply(contribution, snapshot, sync_log.id, today)
                if result:
                    updated += 1
                if result == "divergent":
                    divergent += 1
        except Exception as e:
            # Any abort (auth, provider down, database) closes the run as failed
            self.db.rollback()
            self.repo.finish_sync_log(
                self.db,
                sync_log,
                "failed",
                invoices_checked=len(contributions),
                invoices_conciliated=updated,
                invoices_divergent=divergent,
                invoices_failed=failed + 1,
                error_message=str(e) or type(e).__name__,
            )
            logger.error(f"❌ Lytex sync for clinic {clinic_id} aborted: {e}")
            raise

        self.repo.finish_sync_log(
            self.db,
            sync_log,
            "completed",
            invoices_checked=len(contributions),
            invoices_conciliated=updated,
            invoices_divergent=divergent,
            invoices_failed=failed,
            details={"failures": failures} if failures else None,
        )
        logger.info(
            f"✅ Lytex sync for clinic {clinic_id}: {updated} updated, {divergent} divergent, {failed} failed"
        )
        return {
            "updated": updated,
            "checked": len(contributions),
            "divergent": divergent,
            "failed": failed,
            "sync_log_id": sync_log.id,
        }

    async def sync_one(self, contribution_id: str) -> dict:
        """Pull invoice status from Lytex for a single contribution"""
        contribution = self.repo.get_with_relations(self.db, contribution_id)
        if not contribution:
            raise NotFoundError("Contribuição não encontrada")
        if not contribution.lytex_invoice_id:
            raise InvalidStateError("Contribuição sem cobrança Lytex")

        changed = False
        if not contribution.is_reconciled:
            snapshot = await self.lytex.get_invoice(contribution.lytex_invoice_id)
            sync_log = self.repo.create_sync_log(self.db, contribution.clinic_id, "sync_one")
            result = self._apply(contribution, snapshot, sync_log.id, date.today())
            changed = result is not None
            self.repo.finish_sync_log(
                self.db,
                sync_log,
                "completed",
                invoices_checked=1,
                invoices_conciliated=int(changed),
                invoices_divergent=int(result == "divergent"),
            )

        return {
            "changed": changed,
            "status": contribution.status,
            "has_divergence": contribution.has_divergence,
        }

    def pending_reconciliation_ids(self, clinic_id: str) -> list[str]:
        return self.repo.pending_reconciliation_ids(self.db, clinic_id)

    def reconcile_one(self, contribution_id: str, actor_id: str) -> int:
        """
        Mark one paid, non-divergent contribution as reconciled.

        Anything else (already reconciled, divergent, unpaid, missing) is a
        silent no-op. Returns the number of records changed (0 or 1).
        """
        count = self.repo.mark_reconciled(
            self.db, [contribution_id], actor_id, datetime.utcnow(), require_clean=True
        )
        if count:
            logger.info(f"✅ Contribution {contribution_id} reconciled by {actor_id}")
        else:
            logger.info(f"Contribution {contribution_id} not eligible for reconciliation, skipped")
        return count

    def reconcile_batch(self, contribution_ids: list[str], actor_id: str) -> int:
        """
        Mark a caller-selected set of contributions as reconciled in one statement.

        Callers pass ids from the pending-reconciliation view. Returns the
        number of contributions that changed; ids already reconciled are not
        counted.
        """
        ids = list(dict.fromkeys(contribution_ids))
        if not ids:
            return 0
        count = self.repo.mark_reconciled(self.db, ids, actor_id, datetime.utcnow())
        logger.info(f"✅ {count} of {len(ids)} contributions reconciled by {actor_id}")
        return count
