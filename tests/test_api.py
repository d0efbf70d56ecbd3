"""Tests for the portal API end to end."""
import pytest
from sqlalchemy.exc import SQLAlchemyError

import config
from portal.models import Organization
from web import access
from web.api import member_routes

APPLICATION = {
    "first_name": "Jo",
    "last_name": "Doe",
    "email": "Jo.Doe@Example.com",
    "phone": "+15557654321",
    "address": "12 High Street",
    "designation": "Engineer",
    "password": "applicant-pass",
}


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.mark.asyncio
async def test_health(client):
    """Health endpoint returns ok."""
    r = await client.get("/api/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_list_organizations_public(client, session, organization):
    session.add(Organization(name="Aardvark Club"))
    session.add(Organization(name="Closed Circle", is_active=False))
    await session.commit()
    r = await client.get("/api/organizations")
    assert r.status_code == 200
    names = [o["name"] for o in r.json()["organizations"]]
    assert names == ["Aardvark Club", "Acme Guild"]


@pytest.mark.asyncio
async def test_member_lifecycle(client, sender, organization, admin_headers):
    """Apply -> limited login while pending -> approval -> password + OTP -> full session."""
    r = await client.post("/api/membership/apply", json={**APPLICATION, "organization_id": organization.id})
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["member"]["status"] == "pending"
    membership_id = data["credentials"]["membership_id"]
    assert membership_id.startswith("ACM")
    member_id = data["member"]["id"]

    r = await client.post("/api/auth/member/login", json={"membership_id": membership_id, "password": "applicant-pass"})
    assert r.status_code == 200, r.text
    limited = r.json()
    client.cookies.clear()
    assert limited["access_level"] == "limited"
    assert limited["redirect_url"] == "/member/pending-dashboard"
    assert "otp_required" not in limited
    assert sender.sent == []

    r = await client.get("/api/member/status", headers=bearer(limited["access_token"]))
    assert r.status_code == 200
    assert r.json()["status"] == "pending"
    r = await client.get("/api/member/dashboard", headers=bearer(limited["access_token"]))
    assert r.status_code == 403
    assert r.json() == {"error": "Account not active"}

    r = await client.get("/api/admin/member-applications", headers=admin_headers)
    assert r.status_code == 200
    assert [a["membership_id"] for a in r.json()["applications"]] == [membership_id]
    r = await client.post(f"/api/admin/member-approve/{member_id}", headers=admin_headers)
    assert r.status_code == 200, r.text
    assert r.json()["member"]["status"] == "approved"

    r = await client.post("/api/auth/member/login", json={"membership_id": membership_id, "password": "applicant-pass"})
    assert r.status_code == 200, r.text
    challenge = r.json()
    assert challenge["otp_required"] is True
    assert "access_token" not in challenge
    assert "otp" not in challenge
    assert challenge["masked_contact"] == "jo***@example.com"
    code = sender.last_code("jo.doe@example.com")

    r = await client.post(
        "/api/auth/verify-otp",
        json={"membership_id": membership_id, "channel": "email", "code": code},
    )
    assert r.status_code == 200, r.text
    session_data = r.json()
    client.cookies.clear()
    assert session_data["user_type"] == "member"
    assert session_data["redirect_url"] == "/member/dashboard"
    assert session_data["member"]["status"] == "approved"

    r = await client.get("/api/member/dashboard", headers=bearer(session_data["access_token"]))
    assert r.status_code == 200
    assert r.json()["member"]["membership_id"] == membership_id
    assert r.json()["organization"]["name"] == "Acme Guild"

    r = await client.post(
        "/api/auth/verify-otp",
        json={"membership_id": membership_id, "channel": "email", "code": code},
    )
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid or expired OTP"}


@pytest.mark.asyncio
async def test_member_login_sets_role_cookie(client, make_member):
    member = await make_member(status="pending")
    r = await client.post("/api/auth/member/login", json={"membership_id": member.membership_id, "password": "memberpass1"})
    assert r.status_code == 200
    assert "member-token" in r.cookies
    set_cookie = r.headers["set-cookie"].lower()
    assert "httponly" in set_cookie
    assert "samesite=lax" in set_cookie


@pytest.mark.asyncio
async def test_admin_rejection_blocks_login(client, sender, organization, superadmin_headers):
    """Register admin with OTP -> pending -> superadmin rejects -> login is refused without a token."""
    form = {
        "channel": "email",
        "email": "newadmin@example.com",
        "username": "newadmin",
        "password": "newadmin-pass",
        "first_name": "New",
        "last_name": "Admin",
        "organization_id": organization.id,
    }
    r = await client.post("/api/auth/admin/register", json={**form, "step": "send-otp"})
    assert r.status_code == 200, r.text
    code = sender.last_code("newadmin@example.com")

    r = await client.post("/api/auth/admin/register", json={**form, "step": "complete-registration", "otp": code})
    assert r.status_code == 200, r.text
    request = r.json()["admin_request"]
    assert request["status"] == "pending"

    r = await client.post("/api/auth/admin/login", json={"username": "newadmin", "password": "newadmin-pass"})
    assert r.status_code == 403
    assert r.json()["error"] == "Account Pending Approval"

    r = await client.get("/api/superadmin/admin-requests", headers=superadmin_headers)
    assert [a["username"] for a in r.json()["requests"]] == ["newadmin"]
    r = await client.post(f"/api/superadmin/admin-reject/{request['id']}", headers=superadmin_headers)
    assert r.status_code == 200, r.text

    for identifier in ("newadmin", "newadmin@example.com"):
        r = await client.post("/api/auth/admin/login", json={"username": identifier, "password": "newadmin-pass"})
        assert r.status_code == 403
        body = r.json()
        assert body["error"] == "Account Rejected"
        assert "access_token" not in body
        assert "admin-token" not in r.cookies


@pytest.mark.asyncio
async def test_admin_register_requires_valid_otp(client, sender, organization):
    form = {
        "step": "complete-registration",
        "channel": "email",
        "email": "x@example.com",
        "username": "xadmin",
        "password": "xadmin-pass",
        "first_name": "X",
        "last_name": "Admin",
        "otp": "123456",
    }
    r = await client.post("/api/auth/admin/register", json=form)
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid or expired OTP"}


@pytest.mark.asyncio
async def test_admin_register_rejects_duplicates(client, sender, make_admin):
    await make_admin(username="taken", email="taken@example.com")
    form = {
        "channel": "email",
        "email": "other@example.com",
        "username": "taken",
        "password": "password-123",
        "first_name": "T",
        "last_name": "Aken",
    }
    await client.post("/api/auth/admin/register", json={**form, "step": "send-otp"})
    r = await client.post(
        "/api/auth/admin/register",
        json={**form, "step": "complete-registration", "otp": sender.last_code()},
    )
    assert r.status_code == 409


@pytest.mark.asyncio
async def test_admin_lifecycle_disable_and_enable(client, make_admin, superadmin_headers):
    admin = await make_admin(username="steady", password="steady-pass")
    r = await client.get("/api/superadmin/admins", headers=superadmin_headers)
    assert [a["username"] for a in r.json()["admins"]] == ["steady"]

    r = await client.post(f"/api/superadmin/admin-disable/{admin.id}", headers=superadmin_headers)
    assert r.status_code == 200
    r = await client.post("/api/auth/admin/login", json={"username": "steady", "password": "steady-pass"})
    assert r.status_code == 403
    assert r.json()["error"] == "Account Disabled"

    r = await client.post(f"/api/superadmin/admin-approve/{admin.id}", headers=superadmin_headers)
    assert r.status_code == 404

    r = await client.post(f"/api/superadmin/admin-enable/{admin.id}", headers=superadmin_headers)
    assert r.status_code == 200
    r = await client.post("/api/auth/admin/login", json={"username": "steady", "password": "steady-pass"})
    assert r.status_code == 200
    assert r.json()["redirect_url"] == "/admin/dashboard"


@pytest.mark.asyncio
async def test_admin_review_is_org_scoped_and_single_shot(client, make_member, other_organization, admin_headers):
    own = await make_member(status="pending")
    foreign = await make_member(status="pending", org=other_organization)

    r = await client.get("/api/admin/member-applications", headers=admin_headers)
    assert [a["id"] for a in r.json()["applications"]] == [own.id]

    r = await client.post(f"/api/admin/member-approve/{foreign.id}", headers=admin_headers)
    assert r.status_code == 404
    r = await client.post(f"/api/admin/member-reject/{own.id}", headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["member"]["status"] == "rejected"
    r = await client.post(f"/api/admin/member-approve/{own.id}", headers=admin_headers)
    assert r.status_code == 404
    assert r.json() == {"error": "Application not found or already processed"}


@pytest.mark.asyncio
async def test_rejected_member_login(client, make_member):
    member = await make_member(status="rejected")
    r = await client.post("/api/auth/member/login", json={"membership_id": member.membership_id, "password": "memberpass1"})
    assert r.status_code == 403
    assert r.json()["error"] == "Membership Application Rejected"


@pytest.mark.asyncio
async def test_member_login_bad_password(client, make_member):
    member = await make_member()
    r = await client.post("/api/auth/member/login", json={"membership_id": member.membership_id, "password": "nope"})
    assert r.status_code == 401
    assert r.json() == {"error": "Invalid membership ID or password"}


@pytest.mark.asyncio
async def test_member_login_by_phone_channel(client, sender, make_member):
    member = await make_member(phone="+15551230000")
    r = await client.post(
        "/api/auth/member/login",
        json={"membership_id": member.membership_id, "password": "memberpass1", "otp_channel": "phone"},
    )
    assert r.status_code == 200
    assert r.json()["channel"] == "phone"
    assert sender.sent[-1][:2] == ("+15551230000", "phone")


@pytest.mark.asyncio
async def test_delivery_failure_returns_502(client, sender, make_member):
    member = await make_member()
    sender.fail = True
    r = await client.post(
        "/api/auth/member/login", json={"membership_id": member.membership_id, "password": "memberpass1"}
    )
    assert r.status_code == 502
    assert r.json() == {"error": "Failed to send OTP via email"}


@pytest.mark.asyncio
async def test_pending_member_cannot_finish_otp_login(client, sender, make_member):
    member = await make_member(status="pending")
    r = await client.post("/api/auth/send-otp", json={"membership_id": member.membership_id, "channel": "email"})
    assert r.status_code == 200
    r = await client.post(
        "/api/auth/verify-otp",
        json={"membership_id": member.membership_id, "channel": "email", "code": sender.last_code()},
    )
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_guest_otp_session(client, sender):
    r = await client.post("/api/auth/send-otp", json={"contact": "stranger@example.com", "channel": "email"})
    assert r.status_code == 200
    assert r.json()["user_found"] is False
    r = await client.post(
        "/api/auth/verify-otp",
        json={"contact": "stranger@example.com", "channel": "email", "code": sender.last_code()},
    )
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["user_type"] == "guest"
    assert "auth-token" in r.cookies
    client.cookies.clear()

    r = await client.get("/api/member/status", headers=bearer(data["access_token"]))
    assert r.status_code == 403
    assert r.json() == {"error": "Insufficient permissions"}


@pytest.mark.asyncio
async def test_send_otp_validation(client):
    r = await client.post("/api/auth/send-otp", json={"contact": "a@example.com", "channel": "fax"})
    assert r.status_code == 400
    r = await client.post("/api/auth/send-otp", json={"channel": "email"})
    assert r.status_code == 400
    r = await client.post("/api/auth/send-otp", json={"membership_id": "NOPE", "channel": "email"})
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_gate_rejections(client, make_member):
    r = await client.get("/api/admin/members")
    assert r.status_code == 401
    assert r.json() == {"error": "Authentication required"}

    r = await client.get("/api/admin/members", headers=bearer("garbage"))
    assert r.status_code == 401
    assert r.json() == {"error": "Invalid or expired token"}

    r = await client.get("/admin/dashboard")
    assert r.status_code == 307
    assert r.headers["location"] == "/admin/login"

    r = await client.get("/api/not-a-route")
    assert r.status_code == 403
    assert r.json() == {"error": "Access denied"}

    member = await make_member(status="pending")
    r = await client.post("/api/auth/member/login", json={"membership_id": member.membership_id, "password": "memberpass1"})
    token = r.json()["access_token"]
    client.cookies.clear()
    r = await client.get("/api/admin/members", headers=bearer(token))
    assert r.status_code == 403
    assert r.json() == {"error": "Insufficient permissions"}


@pytest.mark.asyncio
async def test_superadmin_login(client, make_admin):
    r = await client.post("/api/auth/superadmin/login", json={"email": "root@portal.test", "password": "wrong"})
    assert r.status_code == 401
    await make_admin(username="plain", email="plain@example.com", password="plain-pass")
    r = await client.post("/api/auth/superadmin/login", json={"email": "plain@example.com", "password": "plain-pass"})
    assert r.status_code == 403

    r = await client.post("/api/auth/superadmin/login", json={"email": "root@portal.test", "password": "rootpass123"})
    assert r.status_code == 200
    assert r.json()["redirect_url"] == "/superadmin/dashboard"
    assert "superadmin-token" in r.cookies
    token = r.json()["access_token"]
    client.cookies.clear()
    r = await client.get("/api/superadmin/profile", headers=bearer(token))
    assert r.status_code == 200
    assert r.json()["user"]["role"] == "superadmin"


@pytest.mark.asyncio
async def test_me_returns_claims(client, admin_headers):
    r = await client.get("/api/auth/me", headers=admin_headers)
    assert r.status_code == 200
    principal = r.json()["principal"]
    assert principal["role"] == "admin"
    assert principal["username"] == "orgadmin"
    assert "exp" not in principal


@pytest.mark.asyncio
async def test_logout_clears_cookies(client, make_admin):
    await make_admin(username="leaving", password="leaving-pass")
    r = await client.post("/api/auth/admin/login", json={"username": "leaving", "password": "leaving-pass"})
    assert "admin-token" in client.cookies
    r = await client.post("/api/auth/logout")
    assert r.status_code == 200
    cleared = r.headers.get_list("set-cookie")
    for name in ("member-token", "admin-token", "superadmin-token", "auth-token"):
        assert any(c.startswith(f"{name}=") for c in cleared), name
    assert "admin-token" not in client.cookies


@pytest.mark.asyncio
async def test_logout_denylist(client, admin_headers, monkeypatch):
    r = await client.get("/api/admin/members", headers=admin_headers)
    assert r.status_code == 200
    r = await client.post("/api/auth/logout", headers=admin_headers)
    assert r.status_code == 200

    # Stateless by default: the token stays usable until it expires.
    r = await client.get("/api/admin/members", headers=admin_headers)
    assert r.status_code == 200

    monkeypatch.setattr(config, "ENFORCE_TOKEN_DENYLIST", True)
    r = await client.get("/api/admin/members", headers=admin_headers)
    assert r.status_code == 401
    assert r.json() == {"error": "Session has been logged out"}


@pytest.mark.asyncio
async def test_register_validation(client, organization):
    r = await client.post("/api/member/register", json={"first_name": "Only"})
    assert r.status_code == 400
    assert r.json()["error"].startswith("Missing required fields")

    r = await client.post("/api/member/register", json={**APPLICATION, "organization_id": 999})
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid organization selected"}

    r = await client.post("/api/member/register", json={**APPLICATION, "organization_id": organization.id})
    assert r.status_code == 200
    r = await client.post(
        "/api/member/register",
        json={**APPLICATION, "phone": "+15550000000", "email": "jo.doe@example.com", "organization_id": organization.id},
    )
    assert r.status_code == 409
    assert r.json() == {"error": "Email address is already registered"}


@pytest.mark.asyncio
async def test_change_password(client, sender, make_member):
    member = await make_member(status="pending")
    r = await client.post("/api/auth/member/login", json={"membership_id": member.membership_id, "password": "memberpass1"})
    headers = bearer(r.json()["access_token"])
    client.cookies.clear()
    r = await client.post(
        "/api/member/change-password",
        json={"current_password": "memberpass1", "new_password": "short"},
        headers=headers,
    )
    # pending members are limited to the status endpoint
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_change_password_for_approved_member(client, sender, make_member):
    member = await make_member()
    await client.post("/api/auth/member/login", json={"membership_id": member.membership_id, "password": "memberpass1"})
    r = await client.post(
        "/api/auth/verify-otp",
        json={"membership_id": member.membership_id, "channel": "email", "code": sender.last_code()},
    )
    headers = bearer(r.json()["access_token"])
    client.cookies.clear()

    r = await client.post(
        "/api/member/change-password",
        json={"current_password": "memberpass1", "new_password": "short"},
        headers=headers,
    )
    assert r.status_code == 400
    r = await client.post(
        "/api/member/change-password",
        json={"current_password": "memberpass1", "new_password": "longer-password"},
        headers=headers,
    )
    assert r.status_code == 200
    r = await client.post("/api/auth/member/login", json={"membership_id": member.membership_id, "password": "longer-password"})
    assert r.status_code == 200
    assert r.json()["otp_required"] is True


@pytest.mark.asyncio
async def test_org_members_scoped_to_admin(client, make_member, other_organization, organization, admin_headers):
    await make_member(first_name="Visible")
    await make_member(status="pending")
    r = await client.get(f"/api/organizations/{organization.id}/members", headers=admin_headers)
    assert r.status_code == 200
    assert [m["name"].split()[0] for m in r.json()["members"]] == ["Visible"]
    r = await client.get(f"/api/organizations/{other_organization.id}/members", headers=admin_headers)
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_malformed_body_renders_error(client):
    r = await client.post(
        "/api/auth/member/login",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )
    assert r.status_code == 422
    assert r.json() == {"error": "Invalid request body"}

    r = await client.post("/api/auth/admin/register", json={"channel": "email"})
    assert r.status_code == 422
    assert set(r.json()) == {"error"}
    assert r.json()["error"].startswith("Invalid step")


@pytest.mark.asyncio
async def test_verify_membership(client, make_member):
    pending = await make_member(status="pending")
    approved = await make_member(email="ready@example.com")
    rejected = await make_member(status="rejected")

    r = await client.post("/api/auth/verify-membership", json={"membership_id": pending.membership_id.lower()})
    assert r.status_code == 200
    data = r.json()
    assert data["user_type"] == "pending_member"
    assert data["access_level"] == "limited"
    assert data["redirect_url"] == "/member/pending-dashboard"
    assert "access_token" not in data

    r = await client.post("/api/auth/verify-membership", json={"membership_id": approved.membership_id})
    assert r.status_code == 200
    data = r.json()
    assert data["user_type"] == "member"
    assert data["next_step"] == "password_otp"
    assert data["otp_channels"]["email"] == "re***@example.com"
    assert "access_token" not in data
    assert not r.cookies

    r = await client.post("/api/auth/verify-membership", json={"membership_id": rejected.membership_id})
    assert r.status_code == 403

    r = await client.post("/api/auth/verify-membership", json={"membership_id": "ACM26NOPE000000"})
    assert r.status_code == 404
    r = await client.post("/api/auth/verify-membership", json={"membership_id": "AB"})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_denylist_outage_is_a_definite_response(client, admin_headers, monkeypatch):
    async def unavailable(session, token, **kwargs):
        raise SQLAlchemyError("database is locked")

    monkeypatch.setattr(config, "ENFORCE_TOKEN_DENYLIST", True)
    monkeypatch.setattr(access, "is_token_revoked", unavailable)
    r = await client.get("/api/admin/members", headers=admin_headers)
    assert r.status_code == 503
    assert r.json() == {"error": "Session check unavailable. Please try again."}


@pytest.mark.asyncio
async def test_membership_id_collision_is_regenerated(client, organization, make_member, monkeypatch):
    existing = await make_member()
    issued = iter([existing.membership_id, "ACM26JODO000777"])
    monkeypatch.setattr(member_routes, "generate_membership_id", lambda *args: next(issued))

    r = await client.post("/api/member/register", json={**APPLICATION, "organization_id": organization.id})
    assert r.status_code == 200, r.text
    assert r.json()["credentials"]["membership_id"] == "ACM26JODO000777"
