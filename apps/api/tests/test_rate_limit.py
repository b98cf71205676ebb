from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.core.config import get_settings
from leadflow.core.database import Base, get_db
from leadflow.core.rbac import MEMBER_PERMISSIONS
from leadflow.crm.api import get_current_user as crm_get_current_user
from leadflow.crm.service import ActorUser
from leadflow.main import app
from leadflow.middleware.rate_limit import reset_rate_limiter


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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_CRM_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=set(MEMBER_PERMISSIONS),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _lead_payload(index: int) -> dict[str, str]:
    return {"name": f"Rate Limit Lead {index}", "source": "website", "phone": f"+1555010{index}"}


def test_mutations_are_rate_limited(client: TestClient) -> None:
    responses = [client.post("/api/crm/leads", json=_lead_payload(index)) for index in range(5)]

    limited = [response for response in responses if response.status_code == 429]
    assert limited
    assert [response.status_code for response in responses[:3]] == [201, 201, 201]

    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"] == "Too many requests"
    assert body["details"]["retry_after"] >= 1
    assert body["correlation_id"] is not None
    assert first_limited.headers.get("Retry-After") is not None


def test_reads_are_not_rate_limited(client: TestClient) -> None:
    create = client.post("/api/crm/leads", json=_lead_payload(0))
    assert create.status_code == 201

    responses = [client.get("/api/crm/leads") for _ in range(10)]
    assert all(response.status_code != 429 for response in responses)


def test_route_groups_have_separate_buckets(client: TestClient) -> None:
    for index in range(3):
        assert client.post("/api/crm/leads", json=_lead_payload(index)).status_code == 201
    assert client.post("/api/crm/leads", json=_lead_payload(9)).status_code == 429

    deal = client.post("/api/crm/deals", json={"title": "Other group", "deal_value": "10"})
    assert deal.status_code == 201


def test_buckets_are_per_token_subject(client: TestClient) -> None:
    settings = get_settings()

    def auth_header(subject: str) -> dict[str, str]:
        token = jwt.encode({"sub": subject}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
        return {"Authorization": f"Bearer {token}"}

    first_user = auth_header(str(uuid.uuid4()))
    for index in range(3):
        assert client.post("/api/crm/leads", json=_lead_payload(index), headers=first_user).status_code == 201
    assert client.post("/api/crm/leads", json=_lead_payload(5), headers=first_user).status_code == 429

    second_user = auth_header(str(uuid.uuid4()))
    assert client.post("/api/crm/leads", json=_lead_payload(6), headers=second_user).status_code == 201
