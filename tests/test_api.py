"""
HTTP behaviour of the public, auth, event, ticket and payment routes.
Nothing here needs MongoDB: either the request fails before any query runs
or the service is replaced by a fake.
"""
from beanie import PydanticObjectId
from httpx import AsyncClient

from tests.fakes import (STRONG_PASSWORD, FakeAuthService, FakeEventService,
                         FakeTicketService, auth_headers, client_of, fake)


async def test_root_page(client: AsyncClient):
    """Root page describes the API"""
    response = await client.get("/")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["api_prefix"] == "/api/v1"
    assert "timestamp" in body["meta"]


async def test_health_without_database(client: AsyncClient):
    """Health check reports the missing database in the error envelope"""
    response = await client.get("/health")

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "MONGO_CONNECTION_ERROR"


async def test_request_id_is_echoed(client: AsyncClient):
    response = await client.get("/", headers={"X-Request-ID": "trace-42"})

    assert response.headers["X-Request-ID"] == "trace-42"


async def test_request_id_is_generated(client: AsyncClient):
    response = await client.get("/")

    assert len(response.headers["X-Request-ID"]) == 8


async def test_unhandled_error_keeps_the_request_id(application):

    async def explode():
        raise RuntimeError("boom")

    application.app.add_api_route("/explode", explode)

    async with client_of(application) as client:
        response = await client.get("/explode",
                                    headers={"X-Request-ID": "trace-500"})

    assert response.status_code == 500
    assert response.headers["X-Request-ID"] == "trace-500"
    assert response.json()["error"]["code"] == "SERVER-500"


async def test_unknown_route_uses_the_error_envelope(client: AsyncClient):
    response = await client.get("/api/v1/nothing-here")

    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == "STARLETTE-404"


# [Auth]
async def test_register_as_admin_is_forbidden(client: AsyncClient):
    response = await client.post("/api/v1/auth/register",
                                 json={
                                     "name": fake.name(),
                                     "email": fake.email(),
                                     "password": STRONG_PASSWORD,
                                     "role": "admin",
                                 })

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "FORBIDDEN"


async def test_register_with_weak_password(client: AsyncClient):
    response = await client.post("/api/v1/auth/register",
                                 json={
                                     "name": fake.name(),
                                     "email": fake.email(),
                                     "password": "password",
                                 })

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "WEAK_PASSWORD"
    assert len(error["details"]["requirements"]) == 3


async def test_register_with_invalid_email(client: AsyncClient):
    response = await client.post("/api/v1/auth/register",
                                 json={
                                     "name": fake.name(),
                                     "email": "not-an-email",
                                     "password": STRONG_PASSWORD,
                                 })

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "PYDANTIC-422"
    assert error["fields"][0]["loc"] == ["body", "email"]


async def test_register_then_login(make_app):
    application = make_app(auth=FakeAuthService())
    email = fake.email()

    async with client_of(application) as client:
        registered = await client.post("/api/v1/auth/register",
                                       json={
                                           "name": "Grace Hopper",
                                           "email": email,
                                           "password": STRONG_PASSWORD,
                                           "role": "organizer",
                                       })
        logged_in = await client.post("/api/v1/auth/login",
                                      json={
                                          "email": email,
                                          "password": STRONG_PASSWORD
                                      })

    assert registered.status_code == 201
    assert registered.json()["data"]["user"]["role"] == "organizer"
    assert "password_hash" not in registered.json()["data"]["user"]
    assert logged_in.status_code == 200
    assert logged_in.json()["data"]["token_type"] == "bearer"


async def test_login_is_rate_limited(make_app):
    application = make_app({"rate_limit_login": "2/minute"},
                           auth=FakeAuthService())
    credentials = {"email": fake.email(), "password": "Wr0ng!Password"}

    async with client_of(application) as client:
        codes = [(await client.post("/api/v1/auth/login",
                                    json=credentials)).status_code
                 for _ in range(3)]
        limited = await client.post("/api/v1/auth/login", json=credentials)

    assert codes == [401, 401, 429]
    error = limited.json()["error"]
    assert error["code"] == "RATE_LIMITED"
    assert error["details"]["limit"] == 2


async def test_me_requires_a_token(client: AsyncClient):
    response = await client.get("/api/v1/auth/me")

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "MISSING_TOKEN"


async def test_me_rejects_a_bad_token(client: AsyncClient):
    response = await client.get("/api/v1/auth/me",
                                headers={"Authorization": "Bearer nope"})

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "INVALID_TOKEN"


async def test_me_with_a_valid_token(make_app):
    application = make_app(auth=FakeAuthService())
    user_id = str(PydanticObjectId())

    async with client_of(application) as client:
        response = await client.get("/api/v1/auth/me",
                                    headers=auth_headers(
                                        application, user_id=user_id))

    assert response.status_code == 200
    assert response.json()["data"]["id"] == user_id


# [Events]
async def test_list_events_pagination(make_app):
    events = FakeEventService()
    application = make_app(events=events)

    async with client_of(application) as client:
        response = await client.get("/api/v1/events",
                                    params={
                                        "page": 2,
                                        "limit": 5,
                                        "category": "concert",
                                        "upcoming": "false",
                                    })

    assert response.status_code == 200
    assert response.json()["meta"]["pagination"] == {
        "current_page": 2,
        "total_pages": 0,
        "total_events": 0,
    }
    assert events.calls == [(2, 5, "concert", None, False)]


async def test_list_events_rejects_large_pages(make_app):
    async with client_of(make_app(events=FakeEventService())) as client:
        response = await client.get("/api/v1/events", params={"limit": 500})

    assert response.status_code == 422


async def test_categories(make_app):
    async with client_of(make_app(events=FakeEventService())) as client:
        response = await client.get("/api/v1/events/categories")

    assert response.json()["data"] == [{"category": "concert", "count": 3}]


async def test_get_missing_event(make_app):
    async with client_of(make_app(events=FakeEventService())) as client:
        response = await client.get(f"/api/v1/events/{PydanticObjectId()}")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "EVENT_NOT_FOUND"


async def test_get_event_with_invalid_id(client: AsyncClient):
    response = await client.get("/api/v1/events/123")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_OBJECT_ID"


async def test_attendees_cannot_create_events(application, client):
    response = await client.post("/api/v1/events",
                                 json={},
                                 headers=auth_headers(application, "user"))

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "FORBIDDEN"


async def test_event_end_must_follow_start(application, client):
    response = await client.post("/api/v1/events",
                                 json={
                                     "title": "Backwards",
                                     "date": "2030-06-01T20:00:00Z",
                                     "end_date": "2030-06-01T18:00:00Z",
                                     "venue": "Main Hall",
                                     "total_tickets": 10,
                                     "price": 5,
                                 },
                                 headers=auth_headers(application,
                                                      "organizer"))

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "PYDANTIC-422"


# [Tickets]
async def test_ticket_with_invalid_id(application, client):
    response = await client.get("/api/v1/tickets/not-an-id",
                                headers=auth_headers(application))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_OBJECT_ID"


async def test_book_with_invalid_event_id(application, client):
    response = await client.post("/api/v1/tickets/book",
                                 json={
                                     "event_id": "xyz",
                                     "quantity": 1
                                 },
                                 headers=auth_headers(application))

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "PYDANTIC-422"


async def test_book_more_than_ten(application, client):
    response = await client.post("/api/v1/tickets/book",
                                 json={
                                     "event_id": str(PydanticObjectId()),
                                     "quantity": 11
                                 },
                                 headers=auth_headers(application))

    assert response.status_code == 422


async def test_ticket_pdf_download(make_app):
    application = make_app(tickets=FakeTicketService())

    async with client_of(application) as client:
        response = await client.get(
            f"/api/v1/tickets/{PydanticObjectId()}/pdf",
            headers=auth_headers(application))

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert response.headers["content-disposition"] == \
        'attachment; filename="ticket-TKT12345678ABCD.pdf"'
    assert response.content.startswith(b"%PDF")


async def test_ticket_html_view(make_app):
    application = make_app(tickets=FakeTicketService())

    async with client_of(application) as client:
        response = await client.get(
            f"/api/v1/tickets/{PydanticObjectId()}/html",
            headers=auth_headers(application))

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")


# [Payments]
async def test_gateway_status_is_public(client: AsyncClient):
    response = await client.get("/api/v1/payments/gateways")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["default_gateway"] == "stripe"
    assert set(data["gateways"]) == {"stripe", "razorpay", "paypal"}
    assert data["supported_currencies"]["INR"]["symbol"] == "₹"


async def test_refund_requires_admin(application, client):
    response = await client.post(
        f"/api/v1/payments/{PydanticObjectId()}/refund",
        json={"reason": "duplicate"},
        headers=auth_headers(application, "organizer"))

    assert response.status_code == 403
