from __future__ import annotations

import uuid
from collections.abc import Generator
from types import SimpleNamespace

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.core.config import get_settings
from leadflow.core.database import Base, get_db
from leadflow.core.rbac import MEMBER_PERMISSIONS
from leadflow.crm.api import get_current_user as crm_get_current_user
from leadflow.crm.lifecycle import duplicate_message, find_matched_field, normalize_identifiers
from leadflow.crm.models import CRMUser
from leadflow.crm.service import ActorUser, duplicate_service
from leadflow.main import app
from leadflow.middleware.rate_limit import reset_rate_limiter


ACTOR_ID = uuid.uuid4()


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id=str(ACTOR_ID),
            permissions=set(MEMBER_PERMISSIONS),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_lead(client: TestClient, **fields: object) -> dict:
    payload = {"name": "Jane Doe", "source": "instagram", **fields}
    response = client.post("/api/crm/leads", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_normalize_identifiers_trims_lowercases_and_strips_handle_prefix() -> None:
    normalized = normalize_identifiers(
        {
            "phone": "  +15550100 ",
            "email": " Jane@Example.COM",
            "instagram_handle": "@jane.doe",
            "whatsapp_number": "   ",
        }
    )
    assert normalized == {"phone": "+15550100", "email": "jane@example.com", "instagram_handle": "jane.doe"}


def test_find_matched_field_prefers_phone_over_email() -> None:
    existing = SimpleNamespace(phone="+15550100", email="jane@example.com", instagram_handle=None, whatsapp_number=None)
    matched = find_matched_field(existing, {"email": "jane@example.com", "phone": "+15550100"})
    assert matched == "phone"

    only_email = find_matched_field(existing, {"email": "jane@example.com", "phone": "+19990000"})
    assert only_email == "email"


def test_duplicate_message_mentions_assignee_only_when_known() -> None:
    assert duplicate_message("phone", "Jane Doe", None) == 'A lead with this phone number already exists: "Jane Doe"'
    assert (
        duplicate_message("instagram_handle", "Jane Doe", "Priya")
        == 'A lead with this Instagram handle already exists: "Jane Doe" (assigned to Priya)'
    )


def test_no_identifiers_is_never_a_duplicate(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    def fail_lookup(*args: object, **kwargs: object) -> None:
        raise AssertionError("store must not be queried without identifiers")

    monkeypatch.setattr(duplicate_service.leads, "find_duplicate", fail_lookup)
    report = duplicate_service.check_duplicate(db_session, {"phone": "  ", "email": None})
    assert report.is_duplicate is False
    assert report.matched_field is None


def test_check_duplicate_endpoint_matches_normalized_email(client: TestClient) -> None:
    lead = _create_lead(client, email="jane@example.com")

    response = client.post("/api/crm/leads/check-duplicate", json={"email": "  JANE@example.com "})
    assert response.status_code == 200
    body = response.json()
    assert body["is_duplicate"] is True
    assert body["matched_field"] == "email"
    assert body["existing_lead"]["id"] == lead["id"]
    assert body["message"] == 'A lead with this email already exists: "Jane Doe"'


def test_check_duplicate_endpoint_matches_instagram_handle_without_at(client: TestClient) -> None:
    lead = _create_lead(client, instagram_handle="@jane.doe")
    assert lead["instagram_handle"] == "jane.doe"

    response = client.post("/api/crm/leads/check-duplicate", json={"instagram_handle": "jane.doe"})
    body = response.json()
    assert body["is_duplicate"] is True
    assert body["matched_field"] == "Instagram handle"


def test_check_duplicate_excludes_the_lead_being_edited(client: TestClient) -> None:
    lead = _create_lead(client, phone="+15550100")

    response = client.post(
        "/api/crm/leads/check-duplicate",
        json={"phone": "+15550100", "exclude_id": lead["id"]},
    )
    assert response.status_code == 200
    assert response.json() == {"is_duplicate": False, "matched_field": None, "existing_lead": None, "message": None}


def test_check_duplicate_names_the_assignee(client: TestClient, db_session: Session) -> None:
    assignee = CRMUser(email="priya@example.com", name="Priya", role="member", is_active=True)
    db_session.add(assignee)
    db_session.commit()
    _create_lead(client, whatsapp_number="+447700900123", assigned_to=str(assignee.id))

    response = client.post("/api/crm/leads/check-duplicate", json={"whatsapp_number": " +447700900123"})
    body = response.json()
    assert body["is_duplicate"] is True
    assert body["matched_field"] == "WhatsApp number"
    assert body["existing_lead"]["assigned_user_name"] == "Priya"
    assert body["message"].endswith("(assigned to Priya)")
