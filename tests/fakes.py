"""
In-memory stand-ins for the services that need MongoDB, plus builders for
the attribute bags the pure domain functions accept.
"""
from datetime import datetime, timedelta
from types import SimpleNamespace

from beanie import PydanticObjectId
from faker import Faker
from fastapi import Request, status
from httpx import ASGITransport, AsyncClient

from ticketing.core import APIError
from ticketing.schemas import (AuthResponse, CategoryCount, UserPublic,
                               VerificationResponse)

fake = Faker()

STRONG_PASSWORD = "Str0ng!Passw0rd"


def make_user(role: str = "user", **overrides) -> UserPublic:
    data = {
        "id": PydanticObjectId(),
        "name": fake.name(),
        "email": fake.email(),
        "role": role,
    }
    data.update(overrides)
    return UserPublic(**data)


def make_event(**overrides) -> SimpleNamespace:
    """
    Attribute bag shaped like an Event document
    """
    start = datetime(2030, 6, 1, 18, 0)
    data = {
        "id": PydanticObjectId(),
        "title": fake.catch_phrase(),
        "venue": fake.city(),
        "date": start,
        "end_date": start + timedelta(hours=4),
        "organizer_id": PydanticObjectId(),
        "status": "published",
    }
    data.update(overrides)
    return SimpleNamespace(**data)


def make_ticket(**overrides) -> SimpleNamespace:
    data = {
        "id": PydanticObjectId(),
        "ticket_number": "TKT12345678ABCD",
        "event_id": PydanticObjectId(),
        "user_id": PydanticObjectId(),
        "quantity": 2,
        "total_amount": 50.0,
        "currency": "USD",
        "status": "confirmed",
        "payment_status": "completed",
        "is_verified": False,
        "verified_at": None,
        "verified_by": None,
        "booking_date": datetime(2030, 5, 1, 9, 30),
        "qr_code": None,
    }
    data.update(overrides)
    return SimpleNamespace(**data)


def client_of(application) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=application.app),
                       base_url="http://test")


def auth_headers(application, role: str = "user", user_id: str = None) -> dict:
    token = application.authenticator.issue_token(
        user_id=user_id or str(PydanticObjectId()),
        role=role,
        name=fake.name(),
        email=fake.email())
    return {"Authorization": f"Bearer {token}"}


class FakeAuthService():

    def __init__(self):
        self.users = {}

    async def register(self, request):
        if request.email.lower() in self.users:
            raise APIError(status_code=status.HTTP_409_CONFLICT,
                           error_code="EMAIL_TAKEN")
        user = make_user(request.role,
                         name=request.name,
                         email=request.email.lower())
        self.users[user.email] = (user, request.password)
        return AuthResponse(user=user, token="registered-token")

    async def login(self, request):
        stored = self.users.get(request.email.lower())
        if not stored or stored[1] != request.password:
            raise APIError(status_code=status.HTTP_401_UNAUTHORIZED,
                           error_code="INVALID_CREDENTIALS")
        return AuthResponse(user=stored[0], token="login-token")

    async def get_profile(self, user_id):
        return make_user(id=PydanticObjectId(user_id))

    async def change_password(self, user_id, request):
        return None


class FakeEventService():

    def __init__(self):
        self.calls = []

    async def list_events(self,
                          params,
                          category=None,
                          search=None,
                          upcoming=True):
        self.calls.append((params.page, params.limit, category, search,
                           upcoming))
        return [], 0

    async def featured_events(self):
        return []

    async def categories(self):
        return [CategoryCount(category="concert", count=3)]

    async def get_event(self, event_id, user=None):
        raise APIError(status_code=status.HTTP_404_NOT_FOUND,
                       error_code="EVENT_NOT_FOUND")


class FakeTicketService():

    async def pdf(self, ticket_id, user):
        return b"%PDF-1.4 fake", "ticket-TKT12345678ABCD.pdf"

    async def html(self, ticket_id, user):
        return "<html><body>ticket</body></html>"


class FakeVerificationService():

    def __init__(self, can_enter: bool = True):
        self.can_enter = can_enter
        self.seen = []

    async def scan(self, request, verifier, device):
        self.seen.append((request.qr_data, verifier.id, device.type))
        reason = "Ticket is valid for entry" if self.can_enter \
            else "Ticket has already been used"
        return VerificationResponse(
            verification_result={
                "is_valid": self.can_enter,
                "can_enter": self.can_enter,
                "reason": reason,
                "details": {},
            })

    async def history(self, verifier, params, event_id=None,
                      ticket_status=None, day=None):
        return [], 0, {}


class FakeSecurityService():

    def __init__(self, blocked=()):
        self.blocked = set(blocked)

    async def ensure_not_blocked(self, request: Request):
        if request.client and request.client.host in self.blocked:
            raise APIError(status_code=status.HTTP_403_FORBIDDEN,
                           error_code="IP_BLOCKED")


class FakeAdminService():

    async def users(self,
                    params,
                    role=None,
                    account_status=None,
                    search=None,
                    sort_by="created_at",
                    sort_order="desc"):
        return [], 0, [{"_id": "user", "count": 0}]
