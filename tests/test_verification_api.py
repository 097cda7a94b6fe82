import json

import pytest
from beanie import PydanticObjectId

from tests.fakes import (FakeSecurityService, FakeVerificationService,
                         auth_headers, client_of)

SCAN_URL = "/api/v1/verification/scan"
QR_DATA = json.dumps({
    "ticket_number": "TKT12345678ABCD",
    "event_id": str(PydanticObjectId()),
    "user_id": str(PydanticObjectId()),
    "signature": "0" * 32,
})
IPHONE = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X)"


@pytest.fixture
def verification():
    return FakeVerificationService()


@pytest.fixture
def scanner_app(make_app, verification):
    return make_app(verification=verification,
                    security=FakeSecurityService())


async def test_organizer_can_scan(scanner_app, verification):
    """Scan result is reported through success and message"""
    organizer_id = str(PydanticObjectId())

    async with client_of(scanner_app) as client:
        response = await client.post(
            SCAN_URL,
            json={"qr_data": QR_DATA},
            headers={
                **auth_headers(scanner_app, "organizer", organizer_id),
                "User-Agent": IPHONE,
            })

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Ticket is valid for entry"
    assert body["data"]["verification_result"]["can_enter"] is True
    assert verification.seen == [(QR_DATA, organizer_id, "mobile")]


async def test_refused_entry_is_not_an_http_error(make_app):
    application = make_app(verification=FakeVerificationService(False),
                           security=FakeSecurityService())

    async with client_of(application) as client:
        response = await client.post(SCAN_URL,
                                     json={"qr_data": QR_DATA},
                                     headers=auth_headers(
                                         application, "organizer"))

    assert response.status_code == 200
    assert response.json()["success"] is False
    assert response.json()["message"] == "Ticket has already been used"


async def test_attendees_cannot_scan(scanner_app, verification):
    async with client_of(scanner_app) as client:
        response = await client.post(SCAN_URL,
                                     json={"qr_data": QR_DATA},
                                     headers=auth_headers(scanner_app, "user"))

    assert response.status_code == 403
    assert verification.seen == []


async def test_scan_requires_a_token(scanner_app):
    async with client_of(scanner_app) as client:
        response = await client.post(SCAN_URL, json={"qr_data": QR_DATA})

    assert response.status_code == 401


async def test_blocked_ip_is_refused_first(make_app, verification):
    """The block list is checked before authentication"""
    application = make_app(verification=verification,
                           security=FakeSecurityService(["127.0.0.1"]))

    async with client_of(application) as client:
        response = await client.post(SCAN_URL, json={"qr_data": QR_DATA})

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "IP_BLOCKED"
    assert verification.seen == []


async def test_empty_qr_data_is_rejected(scanner_app):
    async with client_of(scanner_app) as client:
        response = await client.post(SCAN_URL,
                                     json={"qr_data": ""},
                                     headers=auth_headers(
                                         scanner_app, "organizer"))

    assert response.status_code == 422


async def test_scan_rate_limit(make_app, verification):
    application = make_app({"rate_limit_qr_scan": "2/5 minutes"},
                           verification=verification,
                           security=FakeSecurityService())
    headers = auth_headers(application, "organizer")

    async with client_of(application) as client:
        codes = [(await client.post(SCAN_URL,
                                    json={"qr_data": QR_DATA},
                                    headers=headers)).status_code
                 for _ in range(3)]

    assert codes == [200, 200, 429]
    assert len(verification.seen) == 2


async def test_scan_is_not_counted_against_the_general_limit(
        make_app, verification):
    application = make_app(
        {
            "rate_limit_general": "1/15 minutes",
            "rate_limit_qr_scan": "3/5 minutes"
        },
        verification=verification,
        security=FakeSecurityService())
    headers = auth_headers(application, "organizer")

    async with client_of(application) as client:
        scans = [(await client.post(SCAN_URL,
                                    json={"qr_data": QR_DATA},
                                    headers=headers)).status_code
                 for _ in range(3)]
        history = [(await client.get("/api/v1/verification/history",
                                     headers=headers)).status_code
                   for _ in range(2)]

    assert scans == [200, 200, 200]
    assert history == [200, 429]


async def test_scan_rate_limit_is_per_verifier(make_app, verification):
    application = make_app({"rate_limit_qr_scan": "1/5 minutes"},
                           verification=verification,
                           security=FakeSecurityService())

    async with client_of(application) as client:
        first = await client.post(SCAN_URL,
                                  json={"qr_data": QR_DATA},
                                  headers=auth_headers(
                                      application, "organizer"))
        second = await client.post(SCAN_URL,
                                   json={"qr_data": QR_DATA},
                                   headers=auth_headers(
                                       application, "organizer"))

    assert first.status_code == 200
    assert second.status_code == 200


async def test_admins_are_not_rate_limited(make_app, verification):
    application = make_app({"rate_limit_qr_scan": "1/5 minutes"},
                           verification=verification,
                           security=FakeSecurityService())
    headers = auth_headers(application, "admin")

    async with client_of(application) as client:
        codes = [(await client.post(SCAN_URL,
                                    json={"qr_data": QR_DATA},
                                    headers=headers)).status_code
                 for _ in range(3)]

    assert codes == [200, 200, 200]


async def test_bulk_needs_at_least_one_ticket(scanner_app):
    async with client_of(scanner_app) as client:
        response = await client.post("/api/v1/verification/bulk",
                                     json={"tickets": []},
                                     headers=auth_headers(
                                         scanner_app, "organizer"))

    assert response.status_code == 422


async def test_stats_rejects_unknown_period(scanner_app):
    async with client_of(scanner_app) as client:
        response = await client.get("/api/v1/verification/stats",
                                    params={"period": "decade"},
                                    headers=auth_headers(
                                        scanner_app, "organizer"))

    assert response.status_code == 422
