"""
Shared fixtures. HTTP tests run the real Application; services that would
need MongoDB are swapped for the fakes in tests/fakes.py. Service tests run
the real services against the in-memory collections of tests/memory_store.py.
"""
from types import SimpleNamespace

import pytest

from ticketing.app import Application
from ticketing.config import Settings
from ticketing.entities import (AdminLog, BlockedIP, Event, Payment, Ticket,
                                User, VerificationLog)
from ticketing.services import (admin, auth, events, payments, security,
                                tickets, verification)
from tests.fakes import client_of
from tests.memory_store import MemoryCollection

SERVICE_MODULES = [auth, events, tickets, payments, verification, security,
                   admin]


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None,
                    jwt_secret="test-jwt-secret",
                    qr_signing_secret="test-qr-secret",
                    bcrypt_rounds=4,
                    log_level="WARNING")


@pytest.fixture
def make_app(settings):

    def factory(settings_overrides=None, **services) -> Application:
        app_settings = settings
        if settings_overrides:
            app_settings = settings.model_copy(update=settings_overrides)
        return Application(settings=app_settings, services=services)

    return factory


@pytest.fixture
def application(make_app) -> Application:
    return make_app()


@pytest.fixture
async def client(application):
    async with client_of(application) as ac:
        yield ac


@pytest.fixture
def store(monkeypatch) -> SimpleNamespace:
    """
    One in-memory collection per document, patched into every service
    module that queries it
    """
    collections = {
        "User": MemoryCollection(User, unique=("email",)),
        "Event": MemoryCollection(Event),
        "Ticket": MemoryCollection(Ticket, unique=("ticket_number",)),
        "Payment": MemoryCollection(Payment, unique=("payment_id",)),
        "VerificationLog": MemoryCollection(VerificationLog),
        "AdminLog": MemoryCollection(AdminLog),
        "BlockedIP": MemoryCollection(BlockedIP, unique=("ip_address",)),
    }
    for module in SERVICE_MODULES:
        for name, collection in collections.items():
            if hasattr(module, name):
                monkeypatch.setattr(module, name, collection)

    return SimpleNamespace(users=collections["User"],
                           events=collections["Event"],
                           tickets=collections["Ticket"],
                           payments=collections["Payment"],
                           verification_logs=collections["VerificationLog"],
                           admin_logs=collections["AdminLog"],
                           blocked_ips=collections["BlockedIP"])
