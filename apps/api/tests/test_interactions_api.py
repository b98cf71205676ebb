from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow import events
from leadflow.core.config import get_settings
from leadflow.core.database import Base, get_db
from leadflow.core.rbac import MEMBER_PERMISSIONS
from leadflow.crm import service as crm_service
from leadflow.crm.api import get_current_user as crm_get_current_user
from leadflow.crm.models import CRMInteraction, CRMTask
from leadflow.crm.service import ActorUser
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
    events.published_events.clear()
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    events.published_events.clear()
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


@pytest.fixture()
def lead(client: TestClient) -> dict:
    response = client.post("/api/crm/leads", json={"name": "Lina", "source": "facebook", "phone": "+15550111"})
    assert response.status_code == 201
    return response.json()


def test_recording_increments_follow_up_count_and_contact_time(client: TestClient, lead: dict) -> None:
    first = client.post(
        f"/api/crm/leads/{lead['id']}/interactions",
        json={"type": "call", "direction": "outbound", "summary": "No answer", "outcome": "no_answer", "call_duration": 0},
    )
    assert first.status_code == 201
    body = first.json()
    assert body["status_before"] == "new"
    assert body["status_after"] == "new"
    assert body["user_id"] == str(ACTOR_ID)
    assert body["warnings"] == []

    client.post(f"/api/crm/leads/{lead['id']}/interactions", json={"type": "whatsapp", "summary": "Sent brochure"})

    lead_after = client.get(f"/api/crm/leads/{lead['id']}").json()
    assert lead_after["follow_up_count"] == 2
    assert lead_after["last_contacted_at"] is not None
    assert lead_after["interactions_count"] == 2

    recorded = [item for item in events.published_events if item["event_type"] == "crm.interaction.recorded"]
    assert len(recorded) == 2


def test_new_status_is_applied_through_lead_rules(client: TestClient, lead: dict) -> None:
    response = client.post(
        f"/api/crm/leads/{lead['id']}/interactions",
        json={"type": "meeting", "summary": "Signed", "new_status": "converted"},
    )
    assert response.status_code == 201
    assert response.json()["status_before"] == "new"
    assert response.json()["status_after"] == "converted"

    lead_after = client.get(f"/api/crm/leads/{lead['id']}").json()
    assert lead_after["status"] == "converted"
    assert lead_after["converted_at"] is not None


def test_lost_without_reason_records_nothing(client: TestClient, lead: dict, db_session: Session) -> None:
    response = client.post(
        f"/api/crm/leads/{lead['id']}/interactions",
        json={"type": "call", "summary": "Not interested", "new_status": "lost"},
    )
    assert response.status_code == 422
    assert response.json()["code"] == "lost_reason_required"

    assert db_session.scalar(select(func.count(CRMInteraction.id))) == 0
    assert client.get(f"/api/crm/leads/{lead['id']}").json()["follow_up_count"] == 0


def test_schedule_follow_up_creates_task_and_sets_next_date(
    client: TestClient,
    lead: dict,
    db_session: Session,
) -> None:
    summary = "Discussed the redesign scope and agreed to send a quote next week"
    response = client.post(
        f"/api/crm/leads/{lead['id']}/interactions",
        json={"type": "call", "summary": summary, "schedule_follow_up": True, "follow_up_date": "2030-01-15"},
    )
    assert response.status_code == 201

    assert client.get(f"/api/crm/leads/{lead['id']}").json()["next_follow_up_date"] == "2030-01-15"
    task = db_session.scalar(select(CRMTask).where(CRMTask.lead_id == uuid.UUID(lead["id"])))
    assert task is not None
    assert task.type == "follow_up_call"
    assert task.title == f"Follow up: {summary[:50]}..."
    assert task.assigned_to == ACTOR_ID
    assert task.status == "pending"


def test_schedule_follow_up_requires_date(client: TestClient, lead: dict) -> None:
    response = client.post(
        f"/api/crm/leads/{lead['id']}/interactions",
        json={"type": "call", "summary": "Call again", "schedule_follow_up": True},
    )
    assert response.status_code == 422
    assert response.json()["code"] == "follow_up_date_required"


def test_list_interactions_newest_first(client: TestClient, lead: dict, monkeypatch: pytest.MonkeyPatch) -> None:
    start = datetime(2024, 6, 10, 9, 0, tzinfo=timezone.utc)
    for offset, summary in enumerate(["first", "second", "third"]):
        monkeypatch.setattr(crm_service, "utcnow", lambda offset=offset: start + timedelta(minutes=offset))
        created = client.post(f"/api/crm/leads/{lead['id']}/interactions", json={"type": "note", "summary": summary})
        assert created.status_code == 201

    listed = client.get(f"/api/crm/leads/{lead['id']}/interactions")
    assert listed.status_code == 200
    assert [item["summary"] for item in listed.json()] == ["third", "second", "first"]


def test_interactions_for_unknown_lead(client: TestClient) -> None:
    missing = client.post(f"/api/crm/leads/{uuid.uuid4()}/interactions", json={"type": "note", "summary": "x"})
    assert missing.status_code == 404
    assert client.get(f"/api/crm/leads/{uuid.uuid4()}/interactions").status_code == 404
