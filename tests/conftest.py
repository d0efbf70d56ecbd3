"""Pytest configuration and fixtures for API tests."""
import os

# Set test env BEFORE any imports that use config
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["APP_ENV"] = "test"
os.environ["JWT_SECRET"] = "test-secret-that-is-long-enough-for-hs256-signing"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["EXPOSE_OTP_IN_RESPONSE"] = "false"
os.environ["INITIAL_SUPERADMIN_EMAIL"] = "root@portal.test"
os.environ["INITIAL_SUPERADMIN_PASSWORD"] = "rootpass123"

import pytest
from httpx import ASGITransport, AsyncClient

from portal.models import AdminAccount, Member, Organization
from portal.models.base import Base, async_session_factory, engine
from portal.services.delivery import OTPSender
from web.api.auth_routes import get_otp_sender
from web.api.main import app
from web.auth import hash_password


class RecordingSender(OTPSender):
    """Captures codes instead of delivering them. Set fail=True to simulate a provider outage."""

    def __init__(self):
        super().__init__()
        self.sent = []
        self.fail = False

    async def send(self, contact, channel, code):
        if self.fail:
            return False
        self.sent.append((contact, channel, code))
        return True

    def last_code(self, contact=None):
        for sent_contact, _channel, code in reversed(self.sent):
            if contact is None or sent_contact == contact:
                return code
        raise AssertionError(f"no OTP sent to {contact}")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
async def _reset_db():
    """Fresh tables for every test (ASGI lifespan doesn't run with httpx)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture
def sender():
    recorder = RecordingSender()
    app.dependency_overrides[get_otp_sender] = lambda: recorder
    yield recorder
    app.dependency_overrides.pop(get_otp_sender, None)


@pytest.fixture
async def client(sender):
    """Async HTTP client for testing the API."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
async def session():
    async with async_session_factory() as s:
        yield s


@pytest.fixture
async def organization(session):
    org = Organization(name="Acme Guild", contact_email="office@acme.test")
    session.add(org)
    await session.commit()
    return org


@pytest.fixture
async def other_organization(session):
    org = Organization(name="Borealis Society")
    session.add(org)
    await session.commit()
    return org


@pytest.fixture
def make_member(session, organization):
    """Factory: insert a member with a known password."""
    counter = {"n": 0}

    async def _make(status="approved", password="memberpass1", org=None, **fields):
        counter["n"] += 1
        n = counter["n"]
        member = Member(
            membership_id=fields.pop("membership_id", f"ACM26TEST{n:06d}"),
            organization_id=(org or organization).id,
            first_name=fields.pop("first_name", "Test"),
            last_name=fields.pop("last_name", f"Member{n}"),
            email=fields.pop("email", f"member{n}@example.com"),
            phone=fields.pop("phone", f"+1555000{n:04d}"),
            address=fields.pop("address", "1 Main Street"),
            password_hash=hash_password(password),
            status=status,
            **fields,
        )
        session.add(member)
        await session.commit()
        return member

    return _make


@pytest.fixture
def make_admin(session, organization):
    """Factory: insert an admin account with a known password."""
    counter = {"n": 0}

    async def _make(status="approved", role="admin", password="adminpass1", org=None, **fields):
        counter["n"] += 1
        n = counter["n"]
        admin = AdminAccount(
            username=fields.pop("username", f"admin{n}"),
            email=fields.pop("email", f"admin{n}@example.com"),
            first_name=fields.pop("first_name", "Ada"),
            last_name=fields.pop("last_name", f"Admin{n}"),
            password_hash=hash_password(password),
            role=role,
            status=status,
            organization_id=(org or organization).id,
            **fields,
        )
        session.add(admin)
        await session.commit()
        return admin

    return _make


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def admin_headers(client, make_admin):
    """Login as an approved admin of the default organization and return Authorization headers."""
    await make_admin(username="orgadmin", password="adminpass1")
    r = await client.post("/api/auth/admin/login", json={"username": "orgadmin", "password": "adminpass1"})
    assert r.status_code == 200, f"Login failed: {r.text}"
    client.cookies.clear()
    return bearer(r.json()["access_token"])


@pytest.fixture
async def superadmin_headers(client):
    """Bootstrap the superadmin through its first login and return Authorization headers."""
    r = await client.post(
        "/api/auth/superadmin/login",
        json={"email": "root@portal.test", "password": "rootpass123"},
    )
    assert r.status_code == 200, f"Login failed: {r.text}"
    client.cookies.clear()
    return bearer(r.json()["access_token"])
