from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal

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
from leadflow.crm.errors import LifecycleValidationError
from leadflow.crm.lifecycle import build_funnel, percentage, sum_values, trend_percentage
from leadflow.crm.models import CRMLead, CRMMeeting
from leadflow.crm.service import ActorUser, ReportService
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
def actor() -> ActorUser:
    return ActorUser(user_id=str(ACTOR_ID), permissions=set(MEMBER_PERMISSIONS))


@pytest.fixture()
def client(db_session: Session, actor: ActorUser) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        actor.correlation_id = getattr(request.state, "correlation_id", None)
        return actor

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_lead(client: TestClient, name: str, status: str | None = None) -> dict:
    response = client.post("/api/crm/leads", json={"name": name, "source": "website"})
    assert response.status_code == 201
    lead = response.json()
    if status is not None:
        patch: dict[str, str] = {"status": status}
        if status == "lost":
            patch["lost_reason"] = "Timing"
        updated = client.patch(f"/api/crm/leads/{lead['id']}", json=patch)
        assert updated.status_code == 200
    return lead


def test_percentage_rounds_half_up_and_handles_zero() -> None:
    assert percentage(1, 3) == 33
    assert percentage(1, 8) == 13
    assert percentage(2, 3) == 67
    assert percentage(5, 0) == 0


def test_trend_percentage() -> None:
    assert trend_percentage(15, 10) == 50
    assert trend_percentage(5, 10) == -50
    assert trend_percentage(7, 0) == 0
    assert trend_percentage(1, 8) == -87
    assert trend_percentage(3, 8) == -62


def test_build_funnel_excludes_side_statuses_from_conversion_base() -> None:
    rows, conversion_rate = build_funnel({"new": 2, "converted": 1, "lost": 3, "no_reply": 2}, 8)
    assert [(row.status, row.count, row.percentage) for row in rows] == [
        ("new", 2, 25),
        ("contacted", 0, 0),
        ("interested", 0, 0),
        ("negotiating", 0, 0),
        ("converted", 1, 13),
    ]
    assert conversion_rate == 33


def test_sum_values_ignores_missing() -> None:
    assert sum_values([Decimal("10.50"), None, Decimal("4.50")]) == Decimal("15.00")
    assert sum_values([]) == Decimal("0")


def test_funnel_with_no_leads(client: TestClient) -> None:
    response = client.get("/api/crm/reports/funnel")
    assert response.status_code == 200
    body = response.json()
    assert body["total_leads"] == 0
    assert body["conversion_rate"] == 0
    assert [stage["status"] for stage in body["stages"]] == ["new", "contacted", "interested", "negotiating", "converted"]
    assert all(stage["count"] == 0 and stage["percentage"] == 0 for stage in body["stages"])


def test_funnel_counts_and_conversion(client: TestClient) -> None:
    _create_lead(client, "A")
    _create_lead(client, "B", "contacted")
    _create_lead(client, "C", "converted")
    _create_lead(client, "D", "lost")

    body = client.get("/api/crm/reports/funnel").json()
    assert body["total_leads"] == 4
    counts = {stage["status"]: (stage["count"], stage["percentage"]) for stage in body["stages"]}
    assert counts["new"] == (1, 25)
    assert counts["contacted"] == (1, 25)
    assert counts["converted"] == (1, 25)
    assert counts["negotiating"] == (0, 0)
    assert body["conversion_rate"] == 33


def test_stats_for_week(client: TestClient, db_session: Session) -> None:
    for name in ("Now 1", "Now 2", "Now 3"):
        _create_lead(client, name)
    ten_days_ago = datetime.now(timezone.utc) - timedelta(days=10)
    for index in range(2):
        db_session.add(
            CRMLead(
                name=f"Earlier {index}",
                source="call",
                status="new",
                follow_up_count=0,
                tags=[],
                created_at=ten_days_ago,
                updated_at=ten_days_ago,
            )
        )
    db_session.commit()

    assert client.post("/api/crm/deals", json={"title": "Open", "deal_value": "1000"}).status_code == 201
    assert client.post("/api/crm/deals", json={"title": "Won", "deal_value": "500", "stage": "won"}).status_code == 201
    assert (
        client.post(
            "/api/crm/deals",
            json={"title": "Lost", "deal_value": "300", "stage": "lost", "lost_reason": "Budget"},
        ).status_code
        == 201
    )

    today = datetime.now(timezone.utc).date()
    for title, due, assignee in (
        ("Mine today", today, ACTOR_ID),
        ("Mine overdue", today - timedelta(days=2), ACTOR_ID),
        ("Theirs today", today, uuid.uuid4()),
        ("Theirs overdue", today - timedelta(days=1), uuid.uuid4()),
    ):
        created = client.post(
            "/api/crm/tasks",
            json={"type": "other", "title": title, "due_date": due.isoformat(), "assigned_to": str(assignee)},
        )
        assert created.status_code == 201

    midnight = datetime.combine(today, time.min, tzinfo=timezone.utc)
    for title, starts, meeting_status in (
        ("Standup", midnight + timedelta(hours=12), "scheduled"),
        ("Dropped", midnight + timedelta(hours=13), "cancelled"),
        ("Tomorrow", midnight + timedelta(days=1, hours=9), "scheduled"),
    ):
        db_session.add(
            CRMMeeting(
                title=title,
                organizer_id=ACTOR_ID,
                start_time=starts,
                end_time=starts + timedelta(minutes=30),
                status=meeting_status,
            )
        )
    db_session.commit()

    response = client.get("/api/crm/reports/stats", params={"period": "week"})
    assert response.status_code == 200
    body = response.json()
    assert body["period"] == "week"
    assert body["new_leads"] == 3
    assert body["previous_period_leads"] == 2
    assert body["leads_trend"] == 50
    assert body["tasks_due_today"] == 2
    assert body["overdue_tasks"] == 2
    assert body["meetings_today"] == 1
    assert Decimal(body["pipeline_value"]) == Decimal("1000")
    assert Decimal(body["revenue_won"]) == Decimal("500")

    mine = client.get("/api/crm/reports/stats", params={"period": "week", "assigned_to": str(ACTOR_ID)}).json()
    assert mine["tasks_due_today"] == 1
    assert mine["overdue_tasks"] == 1
    assert mine["new_leads"] == 3

    month = client.get("/api/crm/reports/stats", params={"period": "month"}).json()
    assert month["new_leads"] == 5
    assert month["previous_period_leads"] == 0
    assert month["leads_trend"] == 0


def test_stats_rejects_unknown_period(client: TestClient, db_session: Session, actor: ActorUser) -> None:
    assert client.get("/api/crm/reports/stats", params={"period": "year"}).status_code == 422

    with pytest.raises(LifecycleValidationError) as exc_info:
        ReportService().get_stats(db_session, actor, "year")
    assert exc_info.value.code == "invalid_period"
