"""
Settlement service tests.

One ledger write per invocation: transaction insert, failure upsert, or
nothing when already settled and unchanged.
"""

import pytest
from sqlalchemy import select, func

from backend.app.models.enums import UserRole
from backend.app.models.failed_financial_transaction import FailedFinancialTransaction
from backend.app.models.finance_enums import CustomerStatus, FailureReason, SettlementOutcome, WorkOrderStatus
from backend.app.models.financial_transaction import FinancialTransaction, TransactionTechnician
from backend.app.models.notification import Notification, NotificationType
from backend.app.models.user import User
from backend.app.models.work_order import WorkOrderEvidence
from backend.app.domain.settlement.ledgers import FailureLedger, TransactionLedger
from backend.app.domain.settlement.service import SettlementService

NEW = CustomerStatus.NEW_CUSTOMER.value


async def count(db_session, model, *conditions):
    return (await db_session.execute(select(func.count(model.id)).where(*conditions))).scalar()


@pytest.fixture
async def priced(configure_pricing, make_technician):
    """One per-job technician priced 6000 for a new customer, base price 10000."""
    tech = await make_technician(name="Marko")
    await configure_pricing(
        prices={NEW: 10000},
        technician_prices=[{"technician_id": tech.id, "prices_by_customer_status": {NEW: 6000}}],
    )
    return tech


@pytest.mark.asyncio
async def test_settle_creates_transaction(db_session, settlement_service, make_work_order, priced):
    wo = await make_work_order(technicians=[priced])

    result = await settlement_service.settle_work_order(db_session, wo.id, verified_by="Ana")

    assert result.outcome == SettlementOutcome.CREATED
    transaction = await TransactionLedger.get(db_session, wo.id)
    assert transaction.id == result.transaction_id
    assert transaction.final_price == 10000
    assert transaction.company_profit == 4000
    assert transaction.verified_by == "Ana"
    assert transaction.customer_status == CustomerStatus.NEW_CUSTOMER
    assert [t.name for t in transaction.technicians] == ["Marko"]
    assert await count(db_session, FailedFinancialTransaction) == 0


@pytest.mark.asyncio
async def test_resettle_is_idempotent(db_session, settlement_service, make_work_order, priced):
    wo = await make_work_order(technicians=[priced])
    first = await settlement_service.settle_work_order(db_session, wo.id)

    second = await settlement_service.settle_work_order(db_session, wo.id)

    assert second.outcome == SettlementOutcome.UNCHANGED
    assert second.transaction_id == first.transaction_id
    assert await count(db_session, FinancialTransaction) == 1
    assert await count(db_session, TransactionTechnician) == 1


@pytest.mark.asyncio
async def test_changed_prices_update_transaction(
    db_session, settlement_service, make_work_order, priced, configure_pricing
):
    wo = await make_work_order(technicians=[priced])
    await settlement_service.settle_work_order(db_session, wo.id)

    await configure_pricing(
        prices={NEW: 12000},
        technician_prices=[{"technician_id": priced.id, "prices_by_customer_status": {NEW: 6000}}],
    )
    result = await settlement_service.settle_work_order(db_session, wo.id)

    assert result.outcome == SettlementOutcome.UPDATED
    transaction = await TransactionLedger.get(db_session, wo.id)
    assert transaction.final_price == 12000
    assert transaction.company_profit == 6000
    assert await count(db_session, FinancialTransaction) == 1


@pytest.mark.asyncio
async def test_replace_mode_always_rewrites(db_session, settlement_service, make_work_order, priced):
    wo = await make_work_order(technicians=[priced])
    first = await settlement_service.settle_work_order(db_session, wo.id)

    result = await settlement_service.settle_work_order(db_session, wo.id, replace=True)

    assert result.outcome == SettlementOutcome.UPDATED
    assert result.transaction_id != first.transaction_id
    assert await count(db_session, FinancialTransaction) == 1


@pytest.mark.asyncio
async def test_missing_evidence_records_failure(db_session, settlement_service, make_work_order, priced):
    wo = await make_work_order(technicians=[priced], with_evidence=False)

    result = await settlement_service.settle_work_order(db_session, wo.id)

    assert result.outcome == SettlementOutcome.FAILED
    assert result.failure_reason == FailureReason.MISSING_WORK_ORDER_EVIDENCE
    record = await FailureLedger.get(db_session, wo.id)
    assert record.attempt_count == 1
    assert record.work_order_details["tis_job_id"] == wo.tis_job_id
    assert record.missing_fields[0]["field"] == "workOrderEvidence"
    assert await count(db_session, FinancialTransaction) == 0


@pytest.mark.asyncio
async def test_repeated_failure_updates_single_record(db_session, settlement_service, make_work_order, priced):
    wo = await make_work_order(technicians=[priced], customer_status=None)

    for _ in range(3):
        result = await settlement_service.settle_work_order(db_session, wo.id)
        assert result.failure_reason == FailureReason.MISSING_CUSTOMER_STATUS

    assert await count(db_session, FailedFinancialTransaction) == 1
    record = await FailureLedger.get(db_session, wo.id)
    assert record.attempt_count == 3


@pytest.mark.asyncio
async def test_success_removes_failure_record(
    db_session, settlement_service, make_work_order, make_technician, configure_pricing
):
    tech = await make_technician()
    wo = await make_work_order(technicians=[tech])

    failed = await settlement_service.settle_work_order(db_session, wo.id)
    assert failed.failure_reason == FailureReason.MISSING_FINANCIAL_SETTINGS

    await configure_pricing(prices={NEW: 8000})
    result = await settlement_service.settle_work_order(db_session, wo.id)

    assert result.outcome == SettlementOutcome.CREATED
    assert await FailureLedger.get(db_session, wo.id) is None


@pytest.mark.asyncio
async def test_not_eligible_writes_nothing(db_session, settlement_service, make_work_order, priced):
    wo = await make_work_order(technicians=[priced], status=WorkOrderStatus.NOT_COMPLETED)
    unverified = await make_work_order(technicians=[priced], verified=False)

    for work_order_id in (wo.id, unverified.id):
        result = await settlement_service.settle_work_order(db_session, work_order_id, replace=True)
        assert result.outcome == SettlementOutcome.NOT_ELIGIBLE

    assert await count(db_session, FinancialTransaction) == 0
    assert await count(db_session, FailedFinancialTransaction) == 0


@pytest.mark.asyncio
async def test_unknown_work_order_records_not_found(db_session, settlement_service):
    result = await settlement_service.settle_work_order(db_session, 4242)

    assert result.failure_reason == FailureReason.WORK_ORDER_NOT_FOUND
    record = await FailureLedger.get(db_session, 4242)
    assert record.work_order_details == {}


@pytest.mark.parametrize("verified, outcome", [
    (True, SettlementOutcome.FAILED),
    (False, SettlementOutcome.NOT_ELIGIBLE),
])
@pytest.mark.asyncio
async def test_missing_technician_row_checked_after_eligibility(
    db_session, settlement_service, make_work_order, priced, mocker, verified, outcome
):
    wo = await make_work_order(technicians=[priced], verified=verified)
    mocker.patch.object(SettlementService, "_load_technicians", mocker.AsyncMock(return_value=([], [4242])))

    result = await settlement_service.settle_work_order(db_session, wo.id)

    assert result.outcome == outcome
    if verified:
        assert result.failure_reason == FailureReason.OTHER_ERROR
        assert "4242" in result.message
        assert await count(db_session, FailedFinancialTransaction) == 1
    else:
        assert await count(db_session, FailedFinancialTransaction) == 0


@pytest.mark.asyncio
async def test_malformed_configuration_becomes_other_error(
    db_session, settlement_service, make_work_order, make_technician, configure_pricing
):
    tech = await make_technician()
    await configure_pricing(prices={NEW: "abc"})
    wo = await make_work_order(technicians=[tech])

    result = await settlement_service.settle_work_order(db_session, wo.id)

    assert result.outcome == SettlementOutcome.FAILED
    assert result.failure_reason == FailureReason.OTHER_ERROR
    assert "abc" in result.message
    assert await count(db_session, FailedFinancialTransaction) == 1


@pytest.mark.asyncio
async def test_failure_after_settlement_keeps_transaction(
    db_session, settlement_service, make_work_order, priced, configure_pricing
):
    wo = await make_work_order(technicians=[priced])
    await settlement_service.settle_work_order(db_session, wo.id)

    await configure_pricing(prices={NEW: 0})
    result = await settlement_service.settle_work_order(db_session, wo.id)

    assert result.outcome == SettlementOutcome.UNCHANGED
    assert result.failure_reason == FailureReason.NO_PRICE_FOR_CUSTOMER_STATUS
    assert await count(db_session, FinancialTransaction) == 1
    assert await count(db_session, FailedFinancialTransaction) == 0


@pytest.mark.asyncio
async def test_failure_in_replace_mode_removes_transaction(
    db_session, settlement_service, make_work_order, priced, configure_pricing
):
    wo = await make_work_order(technicians=[priced])
    await settlement_service.settle_work_order(db_session, wo.id)

    await configure_pricing(prices={NEW: 0})
    result = await settlement_service.settle_work_order(db_session, wo.id, replace=True)

    assert result.outcome == SettlementOutcome.FAILED
    assert await count(db_session, FinancialTransaction) == 0
    assert await count(db_session, TransactionTechnician) == 0
    assert (await FailureLedger.get(db_session, wo.id)).failure_reason == FailureReason.NO_PRICE_FOR_CUSTOMER_STATUS


@pytest.mark.asyncio
async def test_excluded_work_order_is_skipped(db_session, settlement_service, make_work_order, priced):
    wo = await make_work_order(technicians=[priced])
    await settlement_service.settle_work_order(db_session, wo.id)

    record = await settlement_service.exclude_work_order(db_session, wo.id, excluded_by="Ana")
    assert record.excluded_from_finances is True
    assert await count(db_session, FinancialTransaction) == 0

    result = await settlement_service.settle_work_order(db_session, wo.id, replace=True)

    assert result.outcome == SettlementOutcome.EXCLUDED
    assert await count(db_session, FinancialTransaction) == 0


@pytest.mark.asyncio
async def test_resolve_failure(db_session, settlement_service, make_work_order, priced):
    wo = await make_work_order(technicians=[priced], with_evidence=False)
    await settlement_service.settle_work_order(db_session, wo.id)

    record = await settlement_service.resolve_failure(db_session, wo.id)

    assert record.resolved is True
    assert record.resolved_at is not None
    assert await FailureLedger.list_unresolved(db_session) == []
    assert await settlement_service.resolve_failure(db_session, 999) is None


@pytest.mark.asyncio
async def test_pending_discount_notifies_superadmins_once(
    db_session, settlement_service, make_work_order, priced, configure_pricing
):
    db_session.add_all([
        User(email="s1@x.test", username="s1", role=UserRole.SUPERADMIN),
        User(email="s2@x.test", username="s2", role=UserRole.SUPERADMIN),
        User(email="a1@x.test", username="a1", role=UserRole.ADMIN),
        User(email="s3@x.test", username="s3", role=UserRole.SUPERADMIN, is_active=False),
    ])
    await db_session.commit()
    await configure_pricing(
        prices={NEW: 10000},
        discounts=[{"municipality": "Zemun", "discount_percent": 10}],
    )
    wo = await make_work_order(technicians=[priced])

    first = await settlement_service.settle_work_order(db_session, wo.id)
    second = await settlement_service.settle_work_order(db_session, wo.id)

    assert first.outcome == SettlementOutcome.PENDING_CONFIRMATION
    assert second.outcome == SettlementOutcome.PENDING_CONFIRMATION
    record = await FailureLedger.get(db_session, wo.id)
    assert record.requires_admin_action is True
    assert record.suggested_discount == 10
    assert record.attempt_count == 2

    notifications = (await db_session.execute(select(Notification))).scalars().all()
    assert len(notifications) == 2
    assert {n.type for n in notifications} == {NotificationType.DISCOUNT_CONFIRMATION_REQUIRED}
    assert notifications[0].metadata_payload["municipality"] == "Zemun"


@pytest.mark.asyncio
async def test_ledger_events_emitted_after_commit(
    db_session, settlement_service, make_work_order, priced, mocker
):
    listener = mocker.AsyncMock()
    settlement_service.events.subscribe(listener)
    wo = await make_work_order(technicians=[priced], with_evidence=False)

    await settlement_service.settle_work_order(db_session, wo.id)
    db_session.add(WorkOrderEvidence(work_order_id=wo.id, customer_status=NEW))
    await db_session.commit()
    await settlement_service.settle_work_order(db_session, wo.id)

    changes = [call.args[0] for call in listener.await_args_list]
    assert [(c.ledger, c.action) for c in changes] == [
        ("failure", "upserted"),
        ("transaction", "created"),
        ("failure", "deleted"),
    ]
    assert [c.affects_totals for c in changes] == [False, True, False]
