"""
Tests for user registration and request identity resolution.
"""
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from sqlalchemy import update
from fastapi.testclient import TestClient

from mymcp.core.config import settings
from mymcp.core.database import get_db_session, plans
from mymcp.core.errors import ConfigurationError
from mymcp.features.plans.service import retire_plan
from mymcp.features.entitlements.service import check_server_creation
from mymcp.features.subscriptions.service import get_active_subscription, list_subscriptions
from mymcp.features.users.service import get_or_create_user, get_user, get_user_by_external_id
from mymcp.main import app


SECRET = "test-signing-secret"


def make_token(sub="user_jwt", expires_in=timedelta(minutes=5), **claims):
    payload = {"sub": sub, "exp": datetime.now(timezone.utc) + expires_in, **claims}
    return jwt.encode(payload, SECRET, algorithm="HS256")


@pytest.fixture
def jwt_settings(monkeypatch):
    monkeypatch.setattr(settings, "CLERK_SECRET_KEY", SECRET)
    monkeypatch.setattr(settings, "CLERK_AUDIENCE", None)
    monkeypatch.setattr(settings, "CLERK_ISSUER", None)


def test_first_sight_registers_user_on_free_plan(now):
    user = get_or_create_user("user_new", email=" new@example.com ", first_name="Ada", now=now)

    assert user.email == "new@example.com"
    assert user.display_name == "Ada"
    subs = list_subscriptions(user.user_id)
    assert len(subs) == 1
    assert subs[0].plan_id == "free-monthly"


def test_get_or_create_is_stable(now):
    first = get_or_create_user("user_same", email="same@example.com", now=now)
    second = get_or_create_user("user_same", email="same@example.com", now=now + timedelta(days=1))
    assert first.user_id == second.user_id
    assert len(list_subscriptions(first.user_id)) == 1


def test_profile_changes_are_refreshed(now):
    user = get_or_create_user("user_profile", email="old@example.com", now=now)
    updated = get_or_create_user("user_profile", email="new@example.com", last_name="Lovelace", now=now)
    assert updated.email == "new@example.com"
    assert get_user(user.user_id).last_name == "Lovelace"
    assert get_user_by_external_id("user_profile").email == "new@example.com"


def test_missing_default_plan_is_configuration_error(now):
    retire_plan("free-monthly")
    with pytest.raises(ConfigurationError):
        get_or_create_user("user_unlucky", email="u@example.com", now=now)


def test_registration_recovers_once_default_plan_returns(now):
    retire_plan("free-monthly")
    with pytest.raises(ConfigurationError):
        get_or_create_user("user_retry", email="r@example.com", now=now)

    with get_db_session() as session:
        session.execute(update(plans).where(plans.c.plan_id == "free-monthly").values(is_active=True))

    user = get_or_create_user("user_retry", email="r@example.com", now=now)
    active = get_active_subscription(user.user_id, now)
    assert active is not None
    assert active.plan_id == "free-monthly"
    assert check_server_creation(user.user_id, now).allowed

    # A later sign-in does not stack another subscription
    get_or_create_user("user_retry", email="r@example.com", now=now)
    assert len(list_subscriptions(user.user_id)) == 1


def test_header_identity_when_allowed():
    client = TestClient(app)
    resp = client.get("/api/v1/subscription", headers={"X-User-Id": "user_hdr", "X-User-Email": "h@example.com"})
    assert resp.status_code == 200
    assert resp.json()["tier"] == "free"
    assert get_user_by_external_id("user_hdr").email == "h@example.com"


def test_header_identity_rejected_when_disabled(monkeypatch):
    monkeypatch.setattr(settings, "ALLOW_HEADER_AUTH", False)
    client = TestClient(app)
    resp = client.get("/api/v1/subscription", headers={"X-User-Id": "user_hdr"})
    assert resp.status_code == 401


def test_bearer_token_identity(jwt_settings):
    client = TestClient(app)
    token = make_token(sub="user_jwt", email="jwt@example.com", given_name="Grace", family_name="Hopper")
    resp = client.get("/api/v1/subscription", headers={"Authorization": f"Bearer {token}"})

    assert resp.status_code == 200
    user = get_user_by_external_id("user_jwt")
    assert user.email == "jwt@example.com"
    assert user.display_name == "Grace Hopper"


def test_expired_token_is_401(jwt_settings):
    client = TestClient(app)
    token = make_token(expires_in=timedelta(minutes=-5))
    resp = client.get("/api/v1/subscription", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "Token expired"


def test_bad_signature_is_401(jwt_settings):
    client = TestClient(app)
    forged = jwt.encode({"sub": "user_jwt", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
                        "some-other-secret", algorithm="HS256")
    resp = client.get("/api/v1/subscription", headers={"Authorization": f"Bearer {forged}"})
    assert resp.status_code == 401


def test_token_without_subject_is_401(jwt_settings):
    client = TestClient(app)
    token = jwt.encode({"exp": datetime.now(timezone.utc) + timedelta(minutes=5)}, SECRET, algorithm="HS256")
    resp = client.get("/api/v1/subscription", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401
