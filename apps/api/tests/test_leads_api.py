from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow import audit, events
from leadflow.core.auth import ANONYMOUS_SUBJECT
from leadflow.core.config import get_settings
from leadflow.core.database import Base, get_db
from leadflow.core.rbac import MEMBER_PERMISSIONS
from leadflow.crm import service as crm_service
from leadflow.crm.api import get_current_user
from leadflow.crm.models import CRMDeal, CRMInteraction, CRMLead, CRMTask
from leadflow.crm.service import ActorUser
from leadflow.main import app
from leadflow.middleware.rate_limit import reset_rate_limiter


USER_1 = uuid.uuid4()
USER_2 = uuid.uuid4()


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
def clear_stubs(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "user1": ActorUser(user_id=str(USER_1), permissions=set(MEMBER_PERMISSIONS), correlation_id="corr-lead"),
        "user2": ActorUser(user_id=str(USER_2), permissions=set(MEMBER_PERMISSIONS), correlation_id="corr-lead"),
        "reader": ActorUser(user_id=str(uuid.uuid4()), permissions={"crm.leads.read"}, correlation_id="corr-lead"),
        "anonymous": ActorUser(user_id=ANONYMOUS_SUBJECT),
    }
    state = {"current": "user1"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create_lead_payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "name": "Jamie Smith",
        "source": "instagram",
        "phone": "+15550100",
        "email": "jamie@example.com",
        "company_name": "Acme",
    }
    payload.update(overrides)
    return payload


def _create_lead(test_client: TestClient, **overrides: object) -> dict:
    response = test_client.post("/api/crm/leads", json=_create_lead_payload(**overrides))
    assert response.status_code == 201, response.text
    return response.json()


def _seed_lead(db_session: Session, **fields: object) -> CRMLead:
    lead = CRMLead(name="Seeded", source="call", status="new", follow_up_count=0, tags=[], **fields)
    db_session.add(lead)
    db_session.commit()
    return lead


def test_create_lead_starts_new_and_records_creator(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, _ = client
    lead = _create_lead(test_client, status="converted")

    assert lead["status"] == "new"
    assert lead["created_by"] == str(USER_1)
    assert lead["follow_up_count"] == 0
    assert lead["assigned_at"] is None
    assert lead["converted_at"] is None

    created_events = [item for item in events.published_events if item["event_type"] == "crm.lead.created"]
    assert created_events and created_events[-1]["payload"]["lead_id"] == lead["id"]
    assert [entry["action"] for entry in audit.audit_entries if entry["entity_id"] == lead["id"]] == ["create"]


def test_create_lead_requires_name_and_source(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    assert test_client.post("/api/crm/leads", json={"name": "No source"}).status_code == 422
    assert test_client.post("/api/crm/leads", json={"name": "  ", "source": "call"}).status_code == 422


def test_duplicate_phone_is_rejected_with_matched_field(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    original = _create_lead(test_client, phone="+15550100", email=None)

    response = test_client.post(
        "/api/crm/leads",
        json=_create_lead_payload(name="Someone Else", phone=" +15550100 ", email="other@example.com"),
        headers={"X-Correlation-Id": "dup-1"},
    )
    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "duplicate_lead"
    assert body["details"]["matched_field"] == "phone number"
    assert body["details"]["existing_lead"]["id"] == original["id"]
    assert body["message"] == 'A lead with this phone number already exists: "Jamie Smith"'
    assert body["correlation_id"] == "dup-1"

    assert db_session.scalar(select(func.count(CRMLead.id))) == 1


def test_updating_identifier_to_another_leads_value_conflicts(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, _ = client
    first = _create_lead(test_client, phone="+15550100", email="first@example.com")
    second = _create_lead(test_client, name="Second", phone="+15550199", email="second@example.com")

    response = test_client.patch(f"/api/crm/leads/{second['id']}", json={"email": "FIRST@example.com"})
    assert response.status_code == 409
    assert response.json()["details"]["existing_lead"]["id"] == first["id"]

    # Re-saving its own identifiers is not a duplicate.
    same = test_client.patch(f"/api/crm/leads/{second['id']}", json={"phone": "+15550199"})
    assert same.status_code == 200


@pytest.fixture()
def lookup_misses_once(monkeypatch: pytest.MonkeyPatch) -> None:
    """Let the first duplicate lookup miss so only the unique constraints can catch the clash."""
    repository = crm_service.duplicate_service.leads
    real_find = repository.find_duplicate
    calls = {"count": 0}

    def find_duplicate(*args: object, **kwargs: object) -> CRMLead | None:
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return real_find(*args, **kwargs)

    monkeypatch.setattr(repository, "find_duplicate", find_duplicate)


def test_unique_constraint_backstops_a_missed_duplicate_on_create(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    lookup_misses_once: None,
) -> None:
    test_client, _ = client
    original = _seed_lead(db_session, phone="+15550100")

    response = test_client.post(
        "/api/crm/leads",
        json=_create_lead_payload(name="Racing Copy", phone="+15550100", email=None),
    )
    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "duplicate_lead"
    assert body["details"]["matched_field"] == "phone number"
    assert body["details"]["existing_lead"]["id"] == str(original.id)
    assert db_session.scalar(select(func.count(CRMLead.id))) == 1


def test_unique_constraint_backstops_a_missed_duplicate_on_update(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    lookup_misses_once: None,
) -> None:
    test_client, _ = client
    first = _seed_lead(db_session, phone="+15550100", email="first@example.com")
    second = _seed_lead(db_session, phone="+15550199", email="second@example.com")

    response = test_client.patch(f"/api/crm/leads/{second.id}", json={"email": "first@example.com"})
    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "duplicate_lead"
    assert body["details"]["matched_field"] == "email"
    assert body["details"]["existing_lead"]["id"] == str(first.id)

    reread = test_client.get(f"/api/crm/leads/{second.id}").json()
    assert reread["email"] == "second@example.com"


def test_converted_at_is_stamped_once(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    lead = _create_lead(test_client)

    converted = test_client.patch(f"/api/crm/leads/{lead['id']}", json={"status": "converted"})
    assert converted.status_code == 200
    converted_at = converted.json()["converted_at"]
    assert converted_at is not None

    reopened = test_client.patch(f"/api/crm/leads/{lead['id']}", json={"status": "negotiating"})
    assert reopened.json()["converted_at"] == converted_at

    again = test_client.patch(f"/api/crm/leads/{lead['id']}", json={"status": "converted"})
    assert again.json()["status"] == "converted"
    assert again.json()["converted_at"] == converted_at


def test_lost_requires_reason(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    lead = _create_lead(test_client)

    rejected = test_client.patch(f"/api/crm/leads/{lead['id']}", json={"status": "lost"})
    assert rejected.status_code == 422
    assert rejected.json()["code"] == "lost_reason_required"

    unchanged = test_client.get(f"/api/crm/leads/{lead['id']}")
    assert unchanged.json()["status"] == "new"

    lost = test_client.patch(f"/api/crm/leads/{lead['id']}", json={"status": "lost", "lost_reason": "Budget"})
    assert lost.status_code == 200
    assert lost.json()["status"] == "lost"
    assert lost.json()["lost_reason"] == "Budget"


def test_assignment_stamps_and_clears_assigned_at(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    lead = _create_lead(test_client)

    assigned = test_client.patch(f"/api/crm/leads/{lead['id']}", json={"assigned_to": str(USER_2)})
    assert assigned.json()["assigned_to"] == str(USER_2)
    assigned_at = assigned.json()["assigned_at"]
    assert assigned_at is not None

    same = test_client.patch(f"/api/crm/leads/{lead['id']}", json={"assigned_to": str(USER_2)})
    assert same.json()["assigned_at"] == assigned_at

    cleared = test_client.patch(f"/api/crm/leads/{lead['id']}", json={"assigned_to": None})
    assert cleared.json()["assigned_to"] is None
    assert cleared.json()["assigned_at"] is None


def test_contact_triggering_update_sets_last_contacted_at(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, _ = client
    lead = _create_lead(test_client)

    plain = test_client.patch(f"/api/crm/leads/{lead['id']}", json={"priority": "hot"})
    assert plain.json()["last_contacted_at"] is None

    contacted = test_client.patch(
        f"/api/crm/leads/{lead['id']}?contact_triggering=true",
        json={"status": "contacted"},
    )
    assert contacted.status_code == 200
    assert contacted.json()["status"] == "contacted"
    assert contacted.json()["last_contacted_at"] is not None

    updated_events = [item for item in events.published_events if item["event_type"] == "crm.lead.updated"]
    assert updated_events[-1]["payload"]["contact_triggering"] is True
    assert updated_events[-1]["payload"]["from_status"] == "new"


def test_explicit_null_for_required_field_is_ignored(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    lead = _create_lead(test_client)

    response = test_client.patch(f"/api/crm/leads/{lead['id']}", json={"name": None, "source": None, "tags": None})
    assert response.status_code == 200
    assert response.json()["name"] == "Jamie Smith"
    assert response.json()["source"] == "instagram"


def test_get_lead_includes_counts(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, _ = client
    lead = _create_lead(test_client)

    interaction = test_client.post(
        f"/api/crm/leads/{lead['id']}/interactions",
        json={"type": "call", "summary": "Intro call"},
    )
    assert interaction.status_code == 201
    for title in ("Send deck", "Call back"):
        task = test_client.post(
            "/api/crm/tasks",
            json={
                "lead_id": lead["id"],
                "type": "send_proposal",
                "title": title,
                "due_date": date.today().isoformat(),
                "assigned_to": str(USER_1),
            },
        )
        assert task.status_code == 201

    detail = test_client.get(f"/api/crm/leads/{lead['id']}")
    assert detail.status_code == 200
    body = detail.json()
    assert body["interactions_count"] == 1
    assert body["pending_tasks_count"] == 2
    assert body["follow_up_count"] == 1


def test_list_leads_filters_and_searches(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _create_lead(test_client, name="Alpha Studio", phone="+1001", email="alpha@example.com", source="website")
    beta = _create_lead(test_client, name="Beta Labs", phone="+1002", email="beta@example.com", source="referral")
    test_client.patch(f"/api/crm/leads/{beta['id']}", json={"status": "interested"})

    by_status = test_client.get("/api/crm/leads", params={"status": "interested"})
    assert [item["id"] for item in by_status.json()] == [beta["id"]]

    by_source = test_client.get("/api/crm/leads", params={"source": "website"})
    assert [item["name"] for item in by_source.json()] == ["Alpha Studio"]

    by_query = test_client.get("/api/crm/leads", params={"q": "beta@"})
    assert [item["id"] for item in by_query.json()] == [beta["id"]]

    page = test_client.get("/api/crm/leads", params={"limit": 1})
    assert len(page.json()) == 1
    next_page = test_client.get("/api/crm/leads", params={"limit": 1, "cursor": "1"})
    assert len(next_page.json()) == 1
    assert next_page.json()[0]["id"] != page.json()[0]["id"]


def test_delete_lead_cascades_tasks_and_interactions_and_unlinks_deals(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    lead = _create_lead(test_client)
    lead_id = uuid.UUID(lead["id"])

    deal = test_client.post(
        "/api/crm/deals",
        json={"lead_id": lead["id"], "title": "Website build", "deal_value": "5000"},
    )
    assert deal.status_code == 201
    test_client.post(f"/api/crm/leads/{lead['id']}/interactions", json={"type": "note", "summary": "Met at expo"})
    test_client.post(
        "/api/crm/tasks",
        json={
            "lead_id": lead["id"],
            "type": "meeting",
            "title": "Kickoff",
            "due_date": date.today().isoformat(),
            "assigned_to": str(USER_1),
        },
    )

    response = test_client.delete(f"/api/crm/leads/{lead['id']}")
    assert response.status_code == 204

    assert db_session.get(CRMLead, lead_id) is None
    assert db_session.scalar(select(func.count(CRMTask.id)).where(CRMTask.lead_id == lead_id)) == 0
    assert db_session.scalar(select(func.count(CRMInteraction.id)).where(CRMInteraction.lead_id == lead_id)) == 0

    kept = db_session.get(CRMDeal, uuid.UUID(deal.json()["id"]))
    assert kept is not None
    assert kept.lead_id is None

    missing = test_client.get(f"/api/crm/leads/{lead['id']}")
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"


def test_anonymous_and_unpermitted_callers_are_rejected(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, set_actor = client

    set_actor("anonymous")
    anonymous = test_client.get("/api/crm/leads")
    assert anonymous.status_code == 401
    assert anonymous.json()["code"] == "unauthorized"

    set_actor("reader")
    forbidden = test_client.post("/api/crm/leads", json=_create_lead_payload())
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "forbidden"
    assert forbidden.json()["details"] == {"permission": "crm.leads.create"}

    assert test_client.get("/api/crm/leads").status_code == 200
