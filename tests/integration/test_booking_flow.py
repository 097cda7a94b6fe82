"""
End to end booking against a real MongoDB. Set MONGODB_TEST_URL to run,
a throwaway database is created and dropped for each test.
"""
import asyncio
import os
import uuid
from datetime import timedelta

import pytest
from beanie import PydanticObjectId

from ticketing.core import utcnow
from ticketing.entities import User
from ticketing.security import hash_password
from ticketing.ticket_generator import TicketGenerator
from tests.fakes import STRONG_PASSWORD, client_of, fake

MONGODB_TEST_URL = os.environ.get("MONGODB_TEST_URL")

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not MONGODB_TEST_URL,
                       reason="MONGODB_TEST_URL is not set"),
]


def doc_id(document: dict) -> str:
    return document.get("id") or document["_id"]


@pytest.fixture
async def live_app(make_app):
    application = make_app({
        "db_url": MONGODB_TEST_URL,
        "db_name": f"ticketing_test_{uuid.uuid4().hex[:8]}",
        "payment_success_rate": 1.0,
    })
    await application.connect()

    yield application

    await application.db_client.drop_database(application.settings.db_name)
    await application.disconnect()


async def register(client, role: str = "user") -> dict:
    response = await client.post("/api/v1/auth/register",
                                 json={
                                     "name": fake.name(),
                                     "email": fake.unique.email(),
                                     "password": STRONG_PASSWORD,
                                     "role": role,
                                 })
    assert response.status_code == 201, response.text
    token = response.json()["data"]["token"]
    return {"Authorization": f"Bearer {token}"}


async def admin_headers(application) -> dict:
    admin = await User(name="Root",
                       email=fake.unique.email(),
                       password_hash=hash_password(STRONG_PASSWORD, 4),
                       role="admin").insert()
    token = application.authenticator.issue_token(user_id=str(admin.id),
                                                  role="admin",
                                                  name=admin.name,
                                                  email=admin.email)
    return {"Authorization": f"Bearer {token}"}


async def published_event(client, organizer, admin, **overrides) -> dict:
    start = utcnow() + timedelta(minutes=5)
    payload = {
        "title": "Integration Night",
        "category": "concert",
        "date": start.isoformat(),
        "end_date": (start + timedelta(hours=2)).isoformat(),
        "venue": "Main Hall",
        "total_tickets": 50,
        "price": 20,
        "currency": "USD",
    }
    payload.update(overrides)

    created = await client.post("/api/v1/events", json=payload,
                                headers=organizer)
    assert created.status_code == 201, created.text
    event = created.json()["data"]
    assert event["status"] == "draft"

    published = await client.patch(
        f"/api/v1/events/{doc_id(event)}/publish", headers=admin)
    assert published.status_code == 200, published.text
    assert published.json()["data"]["status"] == "published"
    return published.json()["data"]


async def test_book_pay_and_scan(live_app):
    generator = TicketGenerator(live_app.settings.qr_signing_secret)

    async with client_of(live_app) as client:
        organizer = await register(client, "organizer")
        attendee = await register(client)
        admin = await admin_headers(live_app)
        event = await published_event(client, organizer, admin)

        booked = await client.post("/api/v1/tickets/book",
                                   json={
                                       "event_id": doc_id(event),
                                       "quantity": 2
                                   },
                                   headers=attendee)
        assert booked.status_code == 201, booked.text
        ticket = booked.json()["data"]
        assert ticket["status"] == "pending"
        assert ticket["total_amount"] == 40

        intent = await client.post("/api/v1/payments/create-intent",
                                   json={"ticket_id": doc_id(ticket)},
                                   headers=attendee)
        assert intent.status_code == 200, intent.text
        assert intent.json()["data"]["gateway"] == "stripe"

        confirmed = await client.post(
            "/api/v1/payments/confirm",
            json={"payment_id": intent.json()["data"]["payment_id"]},
            headers=attendee)
        assert confirmed.status_code == 200, confirmed.text
        assert confirmed.json()["data"]["status"] == "completed"

        qr_data = generator.build_qr_payload(ticket["ticket_number"],
                                             ticket["event_id"],
                                             ticket["user_id"])
        first = await client.post("/api/v1/verification/scan",
                                  json={"qr_data": qr_data},
                                  headers=organizer)
        second = await client.post("/api/v1/verification/scan",
                                   json={"qr_data": qr_data},
                                   headers=organizer)

        history = await client.get("/api/v1/verification/history",
                                   headers=organizer)

    assert first.json()["success"] is True
    assert first.json()["data"]["verification_result"]["can_enter"] is True
    assert second.json()["success"] is False
    assert second.json()["message"] == "Ticket status is used"
    assert history.json()["meta"]["pagination"]["total_tickets"] == 1


async def test_forged_qr_is_refused(live_app):
    async with client_of(live_app) as client:
        organizer = await register(client, "organizer")
        attendee = await register(client)
        admin = await admin_headers(live_app)
        event = await published_event(client, organizer, admin, price=0)

        booked = await client.post("/api/v1/tickets/book",
                                   json={"event_id": doc_id(event)},
                                   headers=attendee)
        ticket = booked.json()["data"]
        # Free tickets are confirmed on booking
        assert ticket["status"] == "confirmed"

        forged = TicketGenerator("not-the-real-secret").build_qr_payload(
            ticket["ticket_number"], ticket["event_id"], ticket["user_id"])
        response = await client.post("/api/v1/verification/scan",
                                     json={"qr_data": forged},
                                     headers=organizer)

    assert response.json()["success"] is False
    assert response.json()["message"] == "Invalid QR code signature"


async def test_unknown_ticket_number(live_app):
    async with client_of(live_app) as client:
        organizer = await register(client, "organizer")

        response = await client.post("/api/v1/verification/ticket-number",
                                     json={"ticket_number": "TKT00000000ZZZZ"},
                                     headers=organizer)

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "TICKET_NOT_FOUND"


async def test_concurrent_bookings_never_oversell(live_app):
    async with client_of(live_app) as client:
        organizer = await register(client, "organizer")
        admin = await admin_headers(live_app)
        event = await published_event(client, organizer, admin,
                                      total_tickets=3)
        buyers = [await register(client) for _ in range(6)]

        responses = await asyncio.gather(*[
            client.post("/api/v1/tickets/book",
                        json={"event_id": doc_id(event)},
                        headers=buyer) for buyer in buyers
        ])
        remaining = await client.get(f"/api/v1/events/{doc_id(event)}")

    codes = sorted(response.status_code for response in responses)
    assert codes == [201, 201, 201, 400, 400, 400]
    assert all(response.json()["error"]["code"] == "SOLD_OUT"
               for response in responses if response.status_code == 400)
    assert remaining.json()["data"]["available_tickets"] == 0


async def test_booking_a_missing_event(live_app):
    async with client_of(live_app) as client:
        attendee = await register(client)

        response = await client.post(
            "/api/v1/tickets/book",
            json={"event_id": str(PydanticObjectId())},
            headers=attendee)

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "EVENT_NOT_FOUND"
