"""
Finance API integration tests.

Settings, verification-triggered settlement, remediation of failures,
discount confirmation, recalculation, reports and notifications.
"""

import pytest

from backend.app.models.finance_enums import CustomerStatus, WorkOrderStatus
from backend.app.models.notification import NotificationType
from backend.app.models.work_order import WorkOrderEvidence

NEW = CustomerStatus.NEW_CUSTOMER.value


@pytest.fixture
async def priced_technician(client, superadmin_headers, make_technician):
    """A per-job technician at 6000 per new customer; base price 10000."""
    tech = await make_technician(name="Marko")
    response = await client.post("/v1/finances/settings", headers=superadmin_headers, json={
        "prices_by_customer_status": {NEW: 10000},
        "technician_prices": [{"technician_id": tech.id, "prices_by_customer_status": {NEW: 6000}}],
    })
    assert response.status_code == 200
    return tech


# --- Settings ---

@pytest.mark.asyncio
async def test_settings_created_empty_on_first_read(client, superadmin_headers):
    response = await client.get("/v1/finances/settings", headers=superadmin_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["prices_by_customer_status"] == {}
    assert body["discounts_by_municipality"] == []
    assert body["technician_prices"] == []


@pytest.mark.asyncio
async def test_settings_update_merges_prices(client, superadmin_headers):
    gpon = CustomerStatus.GPON_HOUSE.value
    await client.post("/v1/finances/settings", headers=superadmin_headers, json={
        "prices_by_customer_status": {NEW: 10000},
    })
    response = await client.post("/v1/finances/settings", headers=superadmin_headers, json={
        "prices_by_customer_status": {gpon: 15000},
        "discounts_by_municipality": [{"municipality": "Zemun", "discount_percent": 10}],
    })

    assert response.status_code == 200
    body = response.json()
    assert body["prices_by_customer_status"] == {NEW: 10000, gpon: 15000}
    assert body["discounts_by_municipality"] == [{"municipality": "Zemun", "discount_percent": 10}]


@pytest.mark.asyncio
@pytest.mark.parametrize("payload, message", [
    ({"prices_by_customer_status": {"Popravka": 1000}}, "Unknown customer status"),
    ({"prices_by_customer_status": {NEW: -1}}, "Invalid price"),
    ({"technician_prices": [{"technician_id": 1, "prices_by_customer_status": {NEW: -5}}]}, "Invalid price"),
    ({"discounts_by_municipality": [
        {"municipality": "Zemun", "discount_percent": 10},
        {"municipality": "Zemun", "discount_percent": 20},
    ]}, "Duplicate municipality"),
])
async def test_settings_update_rejects_bad_input(client, superadmin_headers, payload, message):
    response = await client.post("/v1/finances/settings", headers=superadmin_headers, json=payload)

    assert response.status_code == 400
    assert message in response.json()["message"]


@pytest.mark.asyncio
async def test_discount_out_of_range_is_validation_error(client, superadmin_headers):
    response = await client.post("/v1/finances/settings", headers=superadmin_headers, json={
        "discounts_by_municipality": [{"municipality": "Zemun", "discount_percent": 150}],
    })
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_settings_update_is_audited(client, superadmin_headers):
    await client.post("/v1/finances/settings", headers=superadmin_headers, json={
        "prices_by_customer_status": {NEW: 10000},
    })

    response = await client.get(
        "/v1/finances/audit-logs", headers=superadmin_headers, params={"action": "FINANCIAL_SETTINGS_UPDATED"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["logs"][0]["actor_username"] == "super_admin"
    assert body["logs"][0]["target_type"] == "financial_settings"


@pytest.mark.asyncio
async def test_lookup_lists(client, superadmin_headers, make_technician, make_work_order):
    await make_technician(name="Zoran")
    await make_technician(name="Ana Admin", is_admin=True)
    await make_work_order(municipality="Vracar")
    await make_work_order(municipality="Zemun")
    await make_work_order(municipality="Vracar")

    options = (await client.get("/v1/finances/customer-status-options", headers=superadmin_headers)).json()
    municipalities = (await client.get("/v1/finances/municipalities", headers=superadmin_headers)).json()
    technicians = (await client.get("/v1/finances/technicians", headers=superadmin_headers)).json()

    assert len(options) == len(CustomerStatus)
    assert {"value": NEW, "label": CustomerStatus.NEW_CUSTOMER.label} in options
    assert municipalities == ["Vracar", "Zemun"]
    assert [t["name"] for t in technicians] == ["Zoran"]


# --- Verification and settlement ---

@pytest.mark.asyncio
async def test_verify_settles_work_order(client, superadmin_headers, priced_technician, make_work_order):
    wo = await make_work_order(technicians=[priced_technician], verified=False)

    first = await client.post(f"/v1/work-orders/{wo.id}/verify", headers=superadmin_headers)
    second = await client.post(f"/v1/work-orders/{wo.id}/verify", headers=superadmin_headers)

    assert first.status_code == 200
    assert first.json()["verified"] is True
    assert first.json()["settlement"]["outcome"] == "CREATED"
    assert second.json()["settlement"]["outcome"] == "UNCHANGED"
    assert second.json()["verified_at"] == first.json()["verified_at"]

    report = (await client.get("/v1/finances/reports", headers=superadmin_headers)).json()
    assert report["summary"]["transactions_count"] == 1
    assert report["summary"]["total_profit"] == 4000
    assert report["transactions"][0]["verified_by"] == "Super Admin"


@pytest.mark.asyncio
async def test_verify_rejects_missing_and_incomplete(client, superadmin_headers, make_work_order):
    open_order = await make_work_order(status=WorkOrderStatus.NOT_COMPLETED, verified=False)

    missing = await client.post("/v1/work-orders/9999/verify", headers=superadmin_headers)
    incomplete = await client.post(f"/v1/work-orders/{open_order.id}/verify", headers=superadmin_headers)

    assert missing.status_code == 404
    assert incomplete.status_code == 400


@pytest.mark.asyncio
async def test_settle_endpoint_reports_failure(client, superadmin_headers, priced_technician, make_work_order):
    wo = await make_work_order(technicians=[priced_technician], customer_status="   ")

    response = await client.post(f"/v1/finances/work-orders/{wo.id}/settle", headers=superadmin_headers)

    body = response.json()
    assert body["outcome"] == "FAILED"
    assert body["failure_reason"] == "MISSING_CUSTOMER_STATUS"
    assert body["missing_fields"]


# --- Remediation ---

@pytest.mark.asyncio
async def test_failed_transaction_retry_flow(
    client, superadmin_headers, db_session, priced_technician, make_work_order
):
    wo = await make_work_order(technicians=[priced_technician], with_evidence=False)
    work_order_id = wo.id
    await client.post(f"/v1/finances/work-orders/{work_order_id}/settle", headers=superadmin_headers)

    listed = (await client.get("/v1/finances/failed-transactions", headers=superadmin_headers)).json()
    filtered = (await client.get(
        "/v1/finances/failed-transactions", headers=superadmin_headers,
        params={"reason": "MISSING_CUSTOMER_STATUS"},
    )).json()

    assert [f["work_order_id"] for f in listed] == [work_order_id]
    assert listed[0]["failure_reason"] == "MISSING_WORK_ORDER_EVIDENCE"
    assert listed[0]["attempt_count"] == 1
    assert filtered == []

    db_session.add(WorkOrderEvidence(work_order_id=work_order_id, customer_status=NEW))
    await db_session.commit()

    retried = await client.post(f"/v1/finances/failed-transactions/{work_order_id}/retry", headers=superadmin_headers)

    assert retried.status_code == 200
    assert retried.json()["outcome"] == "CREATED"
    assert (await client.get("/v1/finances/failed-transactions", headers=superadmin_headers)).json() == []


@pytest.mark.asyncio
async def test_resolve_failed_transaction(client, superadmin_headers, priced_technician, make_work_order):
    wo = await make_work_order(technicians=[priced_technician], with_evidence=False)
    await client.post(f"/v1/finances/work-orders/{wo.id}/settle", headers=superadmin_headers)

    response = await client.post(f"/v1/finances/failed-transactions/{wo.id}/resolve", headers=superadmin_headers)

    assert response.status_code == 200
    assert response.json()["resolved"] is True
    assert (await client.get("/v1/finances/failed-transactions", headers=superadmin_headers)).json() == []


@pytest.mark.asyncio
async def test_excluded_work_order_cannot_be_retried(client, superadmin_headers, priced_technician, make_work_order):
    wo = await make_work_order(technicians=[priced_technician])
    await client.post(f"/v1/work-orders/{wo.id}/verify", headers=superadmin_headers)

    excluded = await client.post(f"/v1/finances/work-orders/{wo.id}/exclude", headers=superadmin_headers)
    retried = await client.post(f"/v1/finances/failed-transactions/{wo.id}/retry", headers=superadmin_headers)
    settled = await client.post(f"/v1/finances/work-orders/{wo.id}/settle", headers=superadmin_headers)

    assert excluded.status_code == 200
    assert excluded.json()["excluded_from_finances"] is True
    assert excluded.json()["excluded_by"] == "Super Admin"
    assert retried.status_code == 409
    assert retried.json()["error_code"] == "ERR_SETTLEMENT_001"
    assert settled.json()["outcome"] == "EXCLUDED"

    report = (await client.get("/v1/finances/reports", headers=superadmin_headers)).json()
    assert report["summary"]["transactions_count"] == 0
    assert (await client.get("/v1/finances/failed-transactions", headers=superadmin_headers)).json() == []


# --- Discount confirmation ---

@pytest.mark.asyncio
async def test_discount_confirmation_flow(client, superadmin_headers, priced_technician, make_work_order):
    await client.post("/v1/finances/settings", headers=superadmin_headers, json={
        "discounts_by_municipality": [{"municipality": "Zemun", "discount_percent": 10}],
    })
    wo = await make_work_order(technicians=[priced_technician], verified=False)

    verified = await client.post(f"/v1/work-orders/{wo.id}/verify", headers=superadmin_headers)
    assert verified.json()["settlement"]["outcome"] == "PENDING_CONFIRMATION"

    pending = (await client.get("/v1/finances/pending-confirmations", headers=superadmin_headers)).json()
    assert pending == [{"municipality": "Zemun", "suggested_discount": 10, "work_order_ids": [wo.id], "count": 1}]

    notifications = (await client.get("/v1/notifications", headers=superadmin_headers)).json()
    assert len(notifications) == 1
    assert notifications[0]["type"] == NotificationType.DISCOUNT_CONFIRMATION_REQUIRED.value

    confirmed = await client.post("/v1/finances/confirm-discount", headers=superadmin_headers, json={
        "municipality": "Zemun", "discount_percent": 10,
    })

    assert confirmed.status_code == 200
    body = confirmed.json()
    assert body["confirmed"] is True
    assert body["confirmed_by"] == "Super Admin"
    assert body["recalculation"]["created"] == 1
    assert (await client.get("/v1/finances/pending-confirmations", headers=superadmin_headers)).json() == []

    report = (await client.get("/v1/finances/reports", headers=superadmin_headers)).json()
    assert report["summary"]["total_revenue"] == 9000
    assert report["summary"]["total_discounts"] == 1000
    assert report["summary"]["total_profit"] == 3000


@pytest.mark.asyncio
async def test_confirm_discount_rejects_blank_municipality(client, superadmin_headers):
    response = await client.post("/v1/finances/confirm-discount", headers=superadmin_headers, json={
        "municipality": "   ", "discount_percent": 10,
    })
    assert response.status_code == 400


# --- Recalculation ---

@pytest.mark.asyncio
async def test_recalculate_list_and_sweep(client, superadmin_headers, priced_technician, make_work_order):
    settled = await make_work_order(technicians=[priced_technician])
    broken = await make_work_order(technicians=[priced_technician], with_evidence=False)
    await make_work_order(technicians=[priced_technician], verified=False)

    listed = await client.post("/v1/finances/recalculate", headers=superadmin_headers, json={
        "work_order_ids": [settled.id],
    })
    sweep = await client.post("/v1/finances/recalculate", headers=superadmin_headers, json={})

    assert listed.json()["processed"] == 1
    assert listed.json()["created"] == 1
    body = sweep.json()
    assert body["processed"] == 2
    assert body["updated"] == 1
    assert body["failed"] == 1
    assert {r["work_order_id"] for r in body["results"]} == {settled.id, broken.id}


# --- Reports ---

@pytest.mark.asyncio
async def test_report_rejects_inverted_range(client, superadmin_headers):
    response = await client.get(
        "/v1/finances/reports", headers=superadmin_headers,
        params={"date_from": "2024-06-01", "date_to": "2024-05-01"},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_report_cache_clear(client, superadmin_headers, reporting):
    await client.get("/v1/finances/reports", headers=superadmin_headers)
    assert len(reporting.cache.backend) == 1

    response = await client.post("/v1/finances/reports/cache/clear", headers=superadmin_headers)

    assert response.status_code == 200
    assert len(reporting.cache.backend) == 0


# --- Notifications ---

@pytest.mark.asyncio
async def test_mark_notifications_read(client, db_session, superadmin, superadmin_headers):
    from backend.app.services.notification_service import NotificationService

    first = await NotificationService.create_notification(db_session, superadmin.id, "One", "First")
    await NotificationService.create_notification(db_session, superadmin.id, "Two", "Second")
    await db_session.commit()
    first_id = first.id

    marked = await client.patch(f"/v1/notifications/{first_id}/read", headers=superadmin_headers)
    unread = (await client.get("/v1/notifications", headers=superadmin_headers, params={"unread_only": True})).json()
    missing = await client.patch("/v1/notifications/9999/read", headers=superadmin_headers)
    all_read = await client.patch("/v1/notifications/read-all", headers=superadmin_headers)

    assert marked.status_code == 200
    assert marked.json()["is_read"] is True
    assert [n["title"] for n in unread] == ["Two"]
    assert missing.status_code == 404
    assert missing.json()["error_code"] == "ERR_NOT_FOUND_001"
    assert all_read.json()["count"] == 1


@pytest.mark.asyncio
async def test_unread_count_and_type_filter(client, db_session, superadmin, superadmin_headers):
    from backend.app.services.notification_service import NotificationService

    await NotificationService.create_notification(db_session, superadmin.id, "Hello", "Plain")
    await NotificationService.notify_discount_confirmation_required(db_session, "Zemun", 10.0, 42)
    await db_session.commit()

    count = await client.get("/v1/notifications/unread-count", headers=superadmin_headers)
    filtered = await client.get(
        "/v1/notifications",
        headers=superadmin_headers,
        params={"type": NotificationType.DISCOUNT_CONFIRMATION_REQUIRED.value},
    )

    assert count.json() == {"unread": 2}
    assert [n["metadata_payload"]["work_order_id"] for n in filtered.json()] == [42]
