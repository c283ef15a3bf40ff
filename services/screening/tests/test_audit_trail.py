from datetime import date, timedelta

import pytest
import httpx
from httpx import ASGITransport
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import sessionmaker

from services.screening import models
from services.screening.app import app
from services.screening.audit import record_event, verify_event_chain
from services.screening.catalog import get_catalog
from services.screening.db import get_db
from services.screening.errors import ConflictError


@pytest.fixture
def test_db_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    models.Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    db = Session()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def override_deps(test_db_session, small_catalog):
    def _get_db_override():
        yield test_db_session

    app.dependency_overrides[get_db] = _get_db_override
    app.dependency_overrides[get_catalog] = lambda: small_catalog
    yield test_db_session
    app.dependency_overrides.clear()


@pytest.mark.anyio
async def test_lifecycle_is_recorded_in_order(override_deps):
    db = override_deps
    async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        r = await client.post("/auth/register", json={"username": "auditor", "password": "password123"})
        h = {"Authorization": f"Bearer {r.json()['access_token']}"}
        user_id = r.json()["user_id"]

        dob = (date.today() - timedelta(days=900)).isoformat()
        r = await client.post("/children", json={"first_name": "Kabir", "date_of_birth": dob}, headers=h)
        r = await client.post("/assessments", json={"child_id": r.json()["id"]}, headers=h)
        assessment_id = r.json()["id"]

        answers = {"a1": "YES", "a2": "NO", "b1": "YES", "b2": "YES"}
        await client.post(
            f"/assessments/{assessment_id}/responses/1",
            json={"responses": [{"question_id": q, "answer": a} for q, a in answers.items()]},
            headers=h,
        )
        await client.post(
            f"/assessments/{assessment_id}/responses/2",
            json={"responses": [{"question_id": "a_t2_1", "answer": "YES"}]},
            headers=h,
        )

        r = await client.get(f"/assessments/{assessment_id}/events", headers=h)
        assert r.status_code == 200
        body = r.json()
        assert body["chain_ok"] is True
        assert [e["action"] for e in body["events"]] == [
            "assessment.create",
            "responses.tier1.submit",
            "assessment.escalate",
            "responses.tier2.submit",
            "assessment.complete",
        ]
        escalate = body["events"][2]
        assert (escalate["status_from"], escalate["status_to"]) == ("TIER1_COMPLETE", "TIER2_REQUIRED")
        assert escalate["detail"]["reasons"] == {"grossMotor": "RISK_INDEX"}
        assert all(e["actor_user_id"] == user_id for e in body["events"])
        seqs = [e["seq"] for e in body["events"]]
        assert seqs == sorted(seqs)
        assert body["events"][0]["prev_hash"] is None

    # Tampering with any stored event breaks the chain
    row = db.query(models.AssessmentEvent).filter(models.AssessmentEvent.action == "assessment.complete").one()
    row.detail_json = '{"overall_score":100}'
    db.commit()
    assert verify_event_chain(db) is False


def test_each_assessment_has_its_own_chain(test_db_session):
    db = test_db_session
    first = record_event(db=db, assessment_id="a-1", actor_user_id="u-1", action="assessment.create")
    other = record_event(db=db, assessment_id="a-2", actor_user_id="u-1", action="assessment.create")
    second = record_event(
        db=db,
        assessment_id="a-1",
        actor_user_id="u-1",
        action="assessment.expire",
        status_from=models.AssessmentStatus.IN_PROGRESS,
        status_to=models.AssessmentStatus.EXPIRED,
    )
    db.commit()

    assert (first.seq, other.seq, second.seq) == (1, 1, 2)
    assert first.prev_hash is None
    assert other.prev_hash is None
    assert second.prev_hash == first.entry_hash
    assert second.status_to == "EXPIRED"
    assert verify_event_chain(db) is True

    other.detail_json = '{"forged":true}'
    db.commit()
    assert verify_event_chain(db, "a-1") is True
    assert verify_event_chain(db, "a-2") is False
    assert verify_event_chain(db) is False


def test_duplicate_chain_position_is_a_conflict(test_db_session):
    db = test_db_session
    first = record_event(db=db, assessment_id="a-1", actor_user_id="u-1", action="assessment.create")
    db.commit()
    # Another writer already took the next position in this chain
    db.add(
        models.AssessmentEvent(
            assessment_id="a-1",
            action="responses.tier1.submit",
            seq=2,
            prev_hash=first.entry_hash,
            entry_hash="x",
        )
    )
    with pytest.raises(ConflictError):
        # The pending row is flushed together with ours, so both claim seq 2
        record_event(db=db, assessment_id="a-1", actor_user_id="u-2", action="responses.tier1.submit")
