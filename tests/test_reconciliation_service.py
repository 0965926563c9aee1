"""Reconciliation engine: Lytex status sync, divergence detection and reconciliation"""

import asyncio
from datetime import date, datetime

import pytest
from sqlalchemy.exc import OperationalError

from conftest import LYTEX_TEST_URL
from unionbilling.domain.contributions.errors import (
    AuthenticationError,
    InvalidStateError,
    NotFoundError,
)
from unionbilling.domain.contributions.lytex_service import LytexService, LytexTokenProvider
from unionbilling.domain.contributions.reconciliation_service import ReconciliationService
from unionbilling.domain.contributions.repository import ContributionRepository
from unionbilling.models import ContributionStatus, LytexConciliationLog, LytexSyncLog

FUTURE_DUE_DATE = date(2099, 1, 10)


@pytest.fixture
def service(db, lytex):
    return ReconciliationService(db, lytex)


def paid_invoice(lytex_api, invoice_id, amount=15000, method="pix"):
    lytex_api.set_invoice(
        invoice_id,
        status="paid",
        totalValue=15000,
        payedValue=amount,
        paidAt="2025-03-05T14:30:00.000Z",
        paymentMethod=method,
        dueDate="2025-03-10T00:00:00.000Z",
    )


def open_invoice(lytex_api, invoice_id, total=15000, due="2099-01-10T00:00:00.000Z", status="waitingPayment"):
    lytex_api.set_invoice(invoice_id, status=status, totalValue=total, dueDate=due)


def sync(service, clinic_id="clinic-1"):
    return asyncio.run(service.sync_pending(clinic_id))


# ============================================================================
# Status sync
# ============================================================================


def test_paid_invoice_marks_contribution_paid(service, make_issued, lytex_api, reload):
    contribution = make_issued("inv-1")
    paid_invoice(lytex_api, "inv-1")

    result = sync(service)

    assert result["updated"] == 1
    assert result["checked"] == 1
    assert result["divergent"] == 0
    stored = reload(contribution.id)
    assert stored.status == ContributionStatus.PAID.value
    assert stored.paid_value == 15000
    assert stored.paid_at == datetime(2025, 3, 5, 14, 30)
    assert stored.payment_method == "pix"
    assert stored.has_divergence is False
    assert stored.value == 15000


def test_unchanged_invoice_is_not_counted(service, make_issued, lytex_api, reload):
    contribution = make_issued("inv-1", due_date=FUTURE_DUE_DATE)
    open_invoice(lytex_api, "inv-1")

    result = sync(service)

    assert result == {"updated": 0, "checked": 1, "divergent": 0, "failed": 0, "sync_log_id": result["sync_log_id"]}
    assert reload(contribution.id).status == ContributionStatus.PENDING.value


def test_second_sync_reports_nothing_changed(service, make_issued, lytex_api):
    make_issued("inv-1")
    paid_invoice(lytex_api, "inv-1")

    assert sync(service)["updated"] == 1
    assert sync(service)["updated"] == 0


def test_paid_amount_mismatch_flags_divergence(service, make_issued, lytex_api, reload):
    contribution = make_issued("inv-1", value=15000)
    paid_invoice(lytex_api, "inv-1", amount=14000)

    result = sync(service)

    assert result["updated"] == 1
    assert result["divergent"] == 1
    stored = reload(contribution.id)
    assert stored.status == ContributionStatus.PAID.value
    assert stored.has_divergence is True
    assert stored.paid_value == 14000
    assert stored.value == 15000


def test_divergence_survives_later_syncs(service, make_issued, lytex_api, reload):
    contribution = make_issued("inv-1", value=15000)
    paid_invoice(lytex_api, "inv-1", amount=14000)
    sync(service)

    paid_invoice(lytex_api, "inv-1", amount=15000)
    sync(service)

    stored = reload(contribution.id)
    assert stored.has_divergence is True
    assert stored.paid_value == 15000
    assert service.reconcile_one(contribution.id, "staff-1") == 0
    assert service.pending_reconciliation_ids("clinic-1") == []
    assert reload(contribution.id).is_reconciled is False


def test_open_invoice_total_mismatch_flags_divergence(service, make_issued, lytex_api, reload):
    contribution = make_issued("inv-1", value=15000, due_date=FUTURE_DUE_DATE)
    open_invoice(lytex_api, "inv-1", total=12000)

    result = sync(service)

    assert result["divergent"] == 1
    stored = reload(contribution.id)
    assert stored.has_divergence is True
    assert stored.status == ContributionStatus.PENDING.value


def test_past_due_open_invoice_becomes_overdue(service, make_issued, lytex_api, reload):
    contribution = make_issued("inv-1")
    open_invoice(lytex_api, "inv-1", due="2025-03-10T00:00:00.000Z")

    sync(service)

    assert reload(contribution.id).status == ContributionStatus.OVERDUE.value


def test_provider_overdue_status_is_applied(service, make_issued, lytex_api, reload):
    contribution = make_issued("inv-1", due_date=FUTURE_DUE_DATE)
    open_invoice(lytex_api, "inv-1", status="overdue")

    sync(service)

    assert reload(contribution.id).status == ContributionStatus.OVERDUE.value


def test_cancelled_invoice_is_cancelled_and_no_longer_synced(service, make_issued, lytex_api, reload):
    contribution = make_issued("inv-1")
    open_invoice(lytex_api, "inv-1", status="canceled")

    sync(service)
    assert reload(contribution.id).status == ContributionStatus.CANCELLED.value

    assert sync(service)["checked"] == 0


def test_only_invoiced_unreconciled_records_of_the_clinic_are_synced(
    service, make_contribution, make_issued, lytex_api
):
    make_contribution()
    make_issued("inv-1", is_reconciled=True, status=ContributionStatus.PAID.value)
    make_issued("inv-2", due_date=FUTURE_DUE_DATE)
    open_invoice(lytex_api, "inv-2")

    result = sync(service)

    assert result["checked"] == 1
    assert [r.url.path for r in lytex_api.requests] == ["/v2/invoices/inv-2"]


def test_lookup_failure_is_counted_and_sync_continues(service, make_issued, lytex_api, reload, db):
    missing = make_issued("inv-missing")
    contribution = make_issued("inv-2")
    paid_invoice(lytex_api, "inv-2")

    result = sync(service)

    assert result["failed"] == 1
    assert result["updated"] == 1
    assert reload(contribution.id).status == ContributionStatus.PAID.value
    assert reload(missing.id).status == ContributionStatus.PENDING.value

    sync_log = db.get(LytexSyncLog, result["sync_log_id"])
    assert sync_log.status == "completed"
    assert sync_log.invoices_failed == 1
    assert sync_log.details["failures"][0]["invoice_id"] == "inv-missing"


def test_malformed_invoice_payload_is_counted_as_failure(service, make_issued, lytex_api, reload, db):
    broken = make_issued("inv-1")
    contribution = make_issued("inv-2")
    lytex_api.set_invoice("inv-1", status="paid", totalValue=15000.5, payedValue=15000)
    paid_invoice(lytex_api, "inv-2")

    result = sync(service)

    assert result["failed"] == 1
    assert result["updated"] == 1
    assert reload(broken.id).status == ContributionStatus.PENDING.value
    assert reload(contribution.id).status == ContributionStatus.PAID.value
    assert db.get(LytexSyncLog, result["sync_log_id"]).status == "completed"


def test_database_failure_closes_sync_log_as_failed(service, make_issued, lytex_api, db):
    make_issued("inv-1")
    paid_invoice(lytex_api, "inv-1")

    def locked_update(db, contribution, **updates):
        raise OperationalError("UPDATE employer_contributions", {}, Exception("database is locked"))

    service.repo.update_contribution = locked_update

    with pytest.raises(OperationalError):
        sync(service)

    sync_log = db.query(LytexSyncLog).one()
    assert sync_log.status == "failed"
    assert sync_log.completed_at is not None
    assert sync_log.invoices_failed == 1
    assert "database is locked" in sync_log.error_message


def test_divergence_flag_goes_through_mark_divergent(service, make_issued, lytex_api, reload):
    contribution = make_issued("inv-1", value=15000, due_date=FUTURE_DUE_DATE)
    open_invoice(lytex_api, "inv-1", total=12000)
    real_mark = service.repo.mark_divergent
    flagged = []

    def recording_mark(db, contribution_id):
        flagged.append(contribution_id)
        return real_mark(db, contribution_id)

    service.repo.mark_divergent = recording_mark

    sync(service)

    assert flagged == [contribution.id]
    assert reload(contribution.id).has_divergence is True


def test_authentication_failure_aborts_sync(db, make_issued, lytex_api):
    make_issued("inv-1")
    lytex_api.token_status = 401
    tokens = LytexTokenProvider(
        api_url=LYTEX_TEST_URL,
        client_id="client-id",
        client_secret="wrong",
        transport=lytex_api.transport,
    )
    service = ReconciliationService(db, LytexService(tokens, api_url=LYTEX_TEST_URL, transport=lytex_api.transport))

    with pytest.raises(AuthenticationError):
        sync(service)

    sync_log = db.query(LytexSyncLog).one()
    assert sync_log.status == "failed"
    assert sync_log.completed_at is not None
    assert "401" in sync_log.error_message


def test_sync_writes_conciliation_log(service, make_issued, lytex_api, db):
    contribution = make_issued("inv-1", value=15000)
    paid_invoice(lytex_api, "inv-1", amount=14000, method="boleto")

    result = sync(service)

    entry = db.query(LytexConciliationLog).one()
    assert entry.sync_log_id == result["sync_log_id"]
    assert entry.contribution_id == contribution.id
    assert entry.previous_status == ContributionStatus.PENDING.value
    assert entry.new_status == ContributionStatus.PAID.value
    assert entry.lytex_paid_value == 14000
    assert entry.lytex_payment_method == "boleto"
    assert entry.conciliation_result == "divergent"

    sync_log = db.get(LytexSyncLog, result["sync_log_id"])
    assert (sync_log.invoices_checked, sync_log.invoices_conciliated, sync_log.invoices_divergent) == (1, 1, 1)


def test_sync_one(service, make_issued, lytex_api):
    contribution = make_issued("inv-1")
    paid_invoice(lytex_api, "inv-1")

    result = asyncio.run(service.sync_one(contribution.id))

    assert result == {"changed": True, "status": "paid", "has_divergence": False}
    assert asyncio.run(service.sync_one(contribution.id))["changed"] is False


def test_sync_one_skips_reconciled_contribution(service, make_issued, lytex_api):
    contribution = make_issued("inv-1", status=ContributionStatus.PAID.value, is_reconciled=True)

    result = asyncio.run(service.sync_one(contribution.id))

    assert result["changed"] is False
    assert lytex_api.requests == []


def test_sync_one_requires_invoice(service, make_contribution):
    contribution = make_contribution()

    with pytest.raises(InvalidStateError):
        asyncio.run(service.sync_one(contribution.id))
    with pytest.raises(NotFoundError):
        asyncio.run(service.sync_one("missing"))


# ============================================================================
# Reconciliation
# ============================================================================


def test_reconcile_one_is_idempotent(service, make_issued, lytex_api, reload):
    contribution = make_issued("inv-1")
    paid_invoice(lytex_api, "inv-1")
    sync(service)

    assert service.reconcile_one(contribution.id, "staff-1") == 1
    first = reload(contribution.id)
    reconciled_at = first.reconciled_at
    assert first.is_reconciled is True
    assert first.reconciled_by == "staff-1"
    assert first.has_divergence is False

    assert service.reconcile_one(contribution.id, "staff-2") == 0
    again = reload(contribution.id)
    assert again.reconciled_at == reconciled_at
    assert again.reconciled_by == "staff-1"


def test_reconcile_one_ignores_unpaid_and_missing(service, make_issued):
    contribution = make_issued("inv-1")

    assert service.reconcile_one(contribution.id, "staff-1") == 0
    assert service.reconcile_one("missing", "staff-1") == 0


def test_batch_counts_only_changed_records(service, make_issued, lytex_api, reload):
    first = make_issued("inv-1")
    second = make_issued("inv-2")
    paid_invoice(lytex_api, "inv-1")
    paid_invoice(lytex_api, "inv-2")
    sync(service)

    pending = service.pending_reconciliation_ids("clinic-1")
    assert sorted(pending) == sorted([first.id, second.id])

    assert service.reconcile_batch(pending, "staff-1") == 2
    stamped = reload(first.id).reconciled_at

    assert service.reconcile_batch(pending, "staff-2") == 0
    assert reload(first.id).reconciled_at == stamped
    assert reload(first.id).reconciled_by == "staff-1"
    assert service.pending_reconciliation_ids("clinic-1") == []


def test_batch_with_already_reconciled_id_counts_one(service, make_issued, reload):
    reconciled_at = datetime(2025, 3, 20, 9, 0)
    fresh = make_issued("inv-1", status=ContributionStatus.PAID.value)
    done = make_issued(
        "inv-2",
        status=ContributionStatus.PAID.value,
        is_reconciled=True,
        reconciled_at=reconciled_at,
        reconciled_by="staff-0",
    )

    assert service.reconcile_batch([fresh.id, done.id], "staff-1") == 1

    assert reload(fresh.id).is_reconciled is True
    assert reload(fresh.id).reconciled_by == "staff-1"
    assert reload(done.id).is_reconciled is True
    assert reload(done.id).reconciled_at == reconciled_at
    assert reload(done.id).reconciled_by == "staff-0"


def test_batch_ignores_duplicates_and_empty_input(service, make_issued, lytex_api):
    contribution = make_issued("inv-1")
    paid_invoice(lytex_api, "inv-1")
    sync(service)

    assert service.reconcile_batch([], "staff-1") == 0
    assert service.reconcile_batch([contribution.id, contribution.id], "staff-1") == 1


def test_mark_divergent(db, make_issued, reload):
    contribution = make_issued("inv-1")

    assert ContributionRepository.mark_divergent(db, contribution.id) == 1
    assert reload(contribution.id).has_divergence is True
