"""End-to-end HTTP tests: job → bid → hold → confirmations → payout."""

import uuid
from decimal import Decimal

import pytest
from httpx import AsyncClient

from tests.helpers import FakeGateway, auth_headers, declined_error, seed_accepted_bid


async def _onboard(client: AsyncClient, homeowner: uuid.UUID, contractor: uuid.UUID) -> None:
    resp = await client.post(
        "/payouts/customer", json={"payment_method": "pm_card_visa"}, headers=auth_headers(homeowner, "homeowner")
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["default_payment_method"] == "pm_card_visa"

    resp = await client.post(
        "/payouts/account", json={"gateway_account_id": "acct_plumber"},
        headers=auth_headers(contractor, "contractor"),
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["payouts_enabled"] is True


@pytest.mark.asyncio
async def test_full_job_payment_flow(client: AsyncClient, gateway: FakeGateway) -> None:
    homeowner, contractor = uuid.uuid4(), uuid.uuid4()
    ho, co = auth_headers(homeowner, "homeowner"), auth_headers(contractor, "contractor")
    await _onboard(client, homeowner, contractor)

    resp = await client.post("/jobs", json={"title": "Fix leaking kitchen sink", "category": "plumbing"}, headers=ho)
    assert resp.status_code == 201, resp.text
    job_id = resp.json()["job_id"]
    assert resp.json()["status"] == "pending"

    resp = await client.post(f"/jobs/{job_id}/bids", json={"amount": "500.00", "message": "Tomorrow 9am"}, headers=co)
    assert resp.status_code == 201, resp.text
    bid_id = resp.json()["bid_id"]

    resp = await client.post(f"/jobs/{job_id}/bids/{bid_id}/accept", headers=ho)
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "accepted"

    resp = await client.post("/payments/holds", json={"bid_id": bid_id, "amount": "500.00"}, headers=ho)
    assert resp.status_code == 201, resp.text
    hold = resp.json()
    assert hold["status"] == "captured"
    assert Decimal(hold["amount"]) == Decimal("500.00")
    assert Decimal(hold["platform_fee"]) == Decimal("50.00")
    assert Decimal(hold["contractor_payout"]) == Decimal("450.00")
    assert resp.headers["Cache-Control"] == "no-store"

    resp = await client.get(f"/jobs/{job_id}", headers=ho)
    assert resp.json()["status"] == "confirmed"

    resp = await client.post(f"/jobs/{job_id}/arrival", headers=co)
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "in_progress"

    resp = await client.post(f"/payments/holds/{hold['hold_id']}/confirm", json={"party": "homeowner"}, headers=ho)
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "captured"
    assert resp.json()["homeowner_confirmed"] is True

    resp = await client.post(f"/payments/holds/{hold['hold_id']}/confirm", json={"party": "contractor"}, headers=co)
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "released"
    assert resp.json()["released_at"] is not None

    assert len(gateway.transfers) == 1
    assert gateway.transfers[0].amount == Decimal("450.00")
    assert gateway.transfers[0].destination == "acct_plumber"

    resp = await client.get(f"/jobs/{job_id}", headers=ho)
    assert resp.json()["status"] == "completed"

    resp = await client.get(f"/jobs/{job_id}/hold", headers=co)
    assert resp.status_code == 200
    assert resp.json()["status"] == "released"

    resp = await client.get("/notifications", headers=co)
    kinds = {n["kind"] for n in resp.json()}
    assert {"bid_accepted", "payment_secured", "completion_confirmed", "payment_released"} <= kinds


@pytest.mark.asyncio
async def test_service_error_shape(client: AsyncClient, session_factory) -> None:
    seed = await seed_accepted_bid(session_factory)
    ho = auth_headers(seed.homeowner_id, "homeowner")
    resp = await client.post("/payments/holds", json={"bid_id": str(seed.bid_id), "amount": "500.00"}, headers=ho)
    hold_id = resp.json()["hold_id"]

    # Homeowner tries to confirm on the contractor's behalf
    resp = await client.post(f"/payments/holds/{hold_id}/confirm", json={"party": "contractor"}, headers=ho)
    assert resp.status_code == 403
    body = resp.json()
    assert body["code"] == "unauthorized"
    assert body["retryable"] is False
    assert body["message"] == "This request could not be completed."
    assert "contractor" in body["detail"]


@pytest.mark.asyncio
async def test_second_hold_is_conflict(client: AsyncClient, session_factory) -> None:
    seed = await seed_accepted_bid(session_factory)
    ho = auth_headers(seed.homeowner_id, "homeowner")
    payload = {"bid_id": str(seed.bid_id), "amount": "500.00"}
    assert (await client.post("/payments/holds", json=payload, headers=ho)).status_code == 201

    resp = await client.post("/payments/holds", json=payload, headers=ho)
    assert resp.status_code == 409
    assert resp.json()["code"] == "conflict"


@pytest.mark.asyncio
async def test_declined_card_surfaces_user_message(
    client: AsyncClient, gateway: FakeGateway, session_factory
) -> None:
    seed = await seed_accepted_bid(session_factory)
    gateway.capture_failures = [declined_error()]
    resp = await client.post(
        "/payments/holds",
        json={"bid_id": str(seed.bid_id), "amount": "500.00"},
        headers=auth_headers(seed.homeowner_id, "homeowner"),
    )
    assert resp.status_code == 402
    body = resp.json()
    assert body["code"] == "gateway_permanent"
    assert body["retryable"] is False
    assert "declined" in body["message"]


@pytest.mark.asyncio
async def test_hold_visible_only_to_parties(client: AsyncClient, session_factory) -> None:
    seed = await seed_accepted_bid(session_factory)
    resp = await client.post(
        "/payments/holds",
        json={"bid_id": str(seed.bid_id), "amount": "500.00"},
        headers=auth_headers(seed.homeowner_id, "homeowner"),
    )
    hold_id = resp.json()["hold_id"]

    resp = await client.get(f"/payments/holds/{hold_id}", headers=auth_headers(uuid.uuid4(), "contractor"))
    assert resp.status_code == 403
    resp = await client.get(f"/payments/holds/{hold_id}", headers=auth_headers(uuid.uuid4(), "admin"))
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_missing_token_is_401(client: AsyncClient) -> None:
    resp = await client.get(f"/jobs/{uuid.uuid4()}")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_contractor_cannot_post_job(client: AsyncClient) -> None:
    resp = await client.post(
        "/jobs", json={"title": "Paint fence"}, headers=auth_headers(uuid.uuid4(), "contractor")
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_admin_routes_require_admin(client: AsyncClient) -> None:
    resp = await client.get("/admin/holds", headers=auth_headers(uuid.uuid4(), "homeowner"))
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Admin access required"


@pytest.mark.asyncio
async def test_admin_refund_and_audit(client: AsyncClient, gateway: FakeGateway, session_factory) -> None:
    seed = await seed_accepted_bid(session_factory)
    resp = await client.post(
        "/payments/holds",
        json={"bid_id": str(seed.bid_id), "amount": "500.00"},
        headers=auth_headers(seed.homeowner_id, "homeowner"),
    )
    hold = resp.json()
    admin = auth_headers(uuid.uuid4(), "admin")

    resp = await client.post(f"/admin/holds/{hold['hold_id']}/refund", json={"reason": ""}, headers=admin)
    assert resp.status_code == 422

    resp = await client.post(
        f"/admin/holds/{hold['hold_id']}/refund", json={"reason": "duplicate charge"}, headers=admin
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "refunded"
    assert resp.json()["refund_reason"] == "duplicate charge"
    assert gateway.refunds[0].intent_id == hold["payment_intent_id"]

    resp = await client.get("/admin/holds", params={"status": "refunded"}, headers=admin)
    assert [h["hold_id"] for h in resp.json()] == [hold["hold_id"]]

    resp = await client.get(f"/admin/holds/{hold['hold_id']}/audit", headers=admin)
    assert resp.status_code == 200
    entries = resp.json()
    assert [e["action"] for e in entries] == ["created", "refunded"]
    assert entries[-1]["prior_status"] == "captured"
    assert entries[-1]["new_status"] == "refunded"
    assert entries[-1]["reason"] == "duplicate charge"
    assert entries[-1]["metadata"]["refund_id"] == gateway.refunds[0].refund_id

    resp = await client.post(
        f"/admin/holds/{hold['hold_id']}/force-release", json={"reason": "oops"}, headers=admin
    )
    assert resp.status_code == 409
    assert resp.json()["code"] == "invalid_state"


@pytest.mark.asyncio
async def test_admin_cancel_refunds_live_hold(client: AsyncClient, gateway: FakeGateway, session_factory) -> None:
    seed = await seed_accepted_bid(session_factory)
    ho = auth_headers(seed.homeowner_id, "homeowner")
    await client.post("/payments/holds", json={"bid_id": str(seed.bid_id), "amount": "500.00"}, headers=ho)

    resp = await client.post(f"/jobs/{seed.job_id}/cancel", headers=ho)
    assert resp.status_code == 409

    resp = await client.post(
        f"/jobs/{seed.job_id}/cancel", json={"reason": "contractor no-show"}, headers=auth_headers(uuid.uuid4(), "admin")
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "cancelled"
    assert len(gateway.refunds) == 1


@pytest.mark.asyncio
async def test_dispute_via_api(client: AsyncClient, session_factory) -> None:
    seed = await seed_accepted_bid(session_factory)
    ho = auth_headers(seed.homeowner_id, "homeowner")
    resp = await client.post("/payments/holds", json={"bid_id": str(seed.bid_id), "amount": "500.00"}, headers=ho)
    hold_id = resp.json()["hold_id"]

    resp = await client.post(f"/payments/holds/{hold_id}/dispute", json={"reason": "Work not finished"}, headers=ho)
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "disputed"
    assert resp.json()["dispute_reason"] == "Work not finished"


@pytest.mark.asyncio
async def test_fee_schedule_is_public(client: AsyncClient) -> None:
    resp = await client.get("/fees")
    assert resp.status_code == 200
    assert resp.json()["platform_fee"]["rate_percent"] == "10.00"


@pytest.mark.asyncio
async def test_health(client: AsyncClient) -> None:
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_mark_notification_read(client: AsyncClient, session_factory) -> None:
    seed = await seed_accepted_bid(session_factory)
    await client.post(
        "/payments/holds",
        json={"bid_id": str(seed.bid_id), "amount": "500.00"},
        headers=auth_headers(seed.homeowner_id, "homeowner"),
    )
    co = auth_headers(seed.contractor_id, "contractor")

    resp = await client.get("/notifications", params={"unread_only": "true"}, headers=co)
    unread = resp.json()
    assert [n["kind"] for n in unread] == ["payment_secured"]

    resp = await client.post(f"/notifications/{unread[0]['notification_id']}/read", headers=co)
    assert resp.status_code == 204
    resp = await client.get("/notifications", params={"unread_only": "true"}, headers=co)
    assert resp.json() == []

    # Someone else's notification is not found
    resp = await client.post(
        f"/notifications/{unread[0]['notification_id']}/read", headers=auth_headers(uuid.uuid4(), "contractor")
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_direct_offer_to_escrow_via_api(client: AsyncClient, gateway: FakeGateway) -> None:
    homeowner, contractor = uuid.uuid4(), uuid.uuid4()
    ho, co = auth_headers(homeowner, "homeowner"), auth_headers(contractor, "contractor")
    await _onboard(client, homeowner, contractor)

    offer = {"contractor_id": str(contractor), "title": "Install ceiling fan", "amount": "180.00"}
    resp = await client.post("/offers", json=offer, headers=co)
    assert resp.status_code == 403

    resp = await client.post("/offers", json=offer, headers=ho)
    assert resp.status_code == 201, resp.text
    job_id = resp.json()["job"]["job_id"]
    bid_id = resp.json()["bid"]["bid_id"]
    assert resp.json()["job"]["offered_to"] == str(contractor)

    resp = await client.post(f"/offers/{job_id}/accept", headers=auth_headers(uuid.uuid4(), "contractor"))
    assert resp.status_code == 403

    resp = await client.post(f"/offers/{job_id}/accept", headers=co)
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "accepted"

    resp = await client.post("/payments/holds", json={"bid_id": bid_id, "amount": "180.00"}, headers=ho)
    assert resp.status_code == 201, resp.text
    assert Decimal(resp.json()["contractor_payout"]) == Decimal("162.00")
    assert len(gateway.captures) == 1


@pytest.mark.asyncio
async def test_transactions_show_each_party_their_side(client: AsyncClient, gateway: FakeGateway, session_factory) -> None:
    seed = await seed_accepted_bid(session_factory)
    ho, co = auth_headers(seed.homeowner_id, "homeowner"), auth_headers(seed.contractor_id, "contractor")
    resp = await client.post("/payments/holds", json={"bid_id": str(seed.bid_id), "amount": "500.00"}, headers=ho)
    hold = resp.json()
    await client.post(f"/payments/holds/{hold['hold_id']}/confirm", json={"party": "homeowner"}, headers=ho)
    await client.post(f"/payments/holds/{hold['hold_id']}/confirm", json={"party": "contractor"}, headers=co)

    resp = await client.get("/payments/transactions", headers=ho)
    assert resp.status_code == 200
    [charge] = resp.json()
    assert charge["direction"] == "debit"
    assert Decimal(charge["amount"]) == Decimal("500.00")
    assert charge["gateway_reference"] == hold["payment_intent_id"]
    assert charge["status"] == "released"
    assert charge["settled_at"] is not None

    resp = await client.get("/payments/transactions", headers=co)
    [payout] = resp.json()
    assert payout["direction"] == "credit"
    assert Decimal(payout["amount"]) == Decimal("450.00")
    assert payout["gateway_reference"] == gateway.transfers[0].transfer_id

    resp = await client.get("/payments/transactions", headers=auth_headers(uuid.uuid4(), "homeowner"))
    assert resp.json() == []


@pytest.mark.asyncio
async def test_payout_onboarding_creates_account_once(client: AsyncClient, gateway: FakeGateway) -> None:
    contractor = uuid.uuid4()
    co = auth_headers(contractor, "contractor")

    resp = await client.post("/payouts/account/onboarding", headers=co)
    assert resp.status_code == 200, resp.text
    first = resp.json()
    assert first["gateway_account_id"].startswith("acct_")
    assert first["payouts_enabled"] is False
    assert first["url"].endswith(first["gateway_account_id"])

    resp = await client.post("/payouts/account/onboarding", headers=co)
    assert resp.json()["gateway_account_id"] == first["gateway_account_id"]
    assert gateway.onboarding_links == [first["gateway_account_id"]] * 2

    resp = await client.post("/payouts/account/onboarding", headers=auth_headers(uuid.uuid4(), "homeowner"))
    assert resp.status_code == 403
