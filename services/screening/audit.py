import hashlib
import json
from datetime import datetime

from fastapi import Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from services.screening import models
from services.screening.errors import ConflictError


def _canonical(obj) -> str:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


def compute_entry_hash(
    *,
    prev_hash: str | None,
    seq: int,
    assessment_id: str,
    actor_user_id: str | None,
    action: str,
    status_from: str | None,
    status_to: str | None,
    detail_json: str,
    ts: datetime,
) -> str:
    payload = {
        "prev_hash": prev_hash,
        "seq": seq,
        "assessment_id": assessment_id,
        "actor_user_id": actor_user_id,
        "action": action,
        "status_from": status_from,
        "status_to": status_to,
        "detail": detail_json,
        "ts": ts.isoformat(),
    }
    return hashlib.sha256(_canonical(payload).encode("utf-8")).hexdigest()


def record_event(
    *,
    db: Session,
    assessment_id: str,
    actor_user_id: str | None,
    action: str,
    status_from: models.AssessmentStatus | None = None,
    status_to: models.AssessmentStatus | None = None,
    detail: dict | None = None,
    request: Request | None = None,
) -> models.AssessmentEvent:
    # Append-only: always insert a new row at the end of this assessment's chain.
    last = (
        db.query(models.AssessmentEvent)
        .filter(models.AssessmentEvent.assessment_id == assessment_id)
        .order_by(models.AssessmentEvent.seq.desc())
        .first()
    )
    prev_hash = last.entry_hash if last else None
    seq = (last.seq + 1) if last else 1

    ip = None
    if request is not None and request.client is not None:
        ip = request.client.host

    ts = datetime.utcnow()
    detail_json = _canonical(detail or {})
    frm = status_from.value if status_from is not None else None
    to = status_to.value if status_to is not None else None
    entry_hash = compute_entry_hash(
        prev_hash=prev_hash,
        seq=seq,
        assessment_id=assessment_id,
        actor_user_id=actor_user_id,
        action=action,
        status_from=frm,
        status_to=to,
        detail_json=detail_json,
        ts=ts,
    )

    row = models.AssessmentEvent(
        assessment_id=assessment_id,
        actor_user_id=actor_user_id,
        action=action,
        status_from=frm,
        status_to=to,
        detail_json=detail_json,
        ip=ip,
        ts=ts,
        seq=seq,
        prev_hash=prev_hash,
        entry_hash=entry_hash,
    )
    db.add(row)
    # Later events in the same unit of work must see this one as the chain tail.
    try:
        db.flush()
    except IntegrityError as e:
        db.rollback()
        raise ConflictError(f"Assessment {assessment_id} was modified concurrently", detail=str(e.orig))
    return row


def list_events(db: Session, assessment_id: str) -> list[models.AssessmentEvent]:
    return (
        db.query(models.AssessmentEvent)
        .filter(models.AssessmentEvent.assessment_id == assessment_id)
        .order_by(models.AssessmentEvent.seq.asc())
        .all()
    )


def verify_event_chain(db: Session, assessment_id: str | None = None) -> bool:
    """Recompute every hash; with no assessment_id, each assessment's chain is walked in turn."""
    q = db.query(models.AssessmentEvent)
    if assessment_id is not None:
        q = q.filter(models.AssessmentEvent.assessment_id == assessment_id)
    rows = q.order_by(models.AssessmentEvent.assessment_id.asc(), models.AssessmentEvent.seq.asc()).all()
    prev = None
    current = None
    for r in rows:
        if r.assessment_id != current:
            current = r.assessment_id
            prev = None
        expected = compute_entry_hash(
            prev_hash=prev,
            seq=r.seq,
            assessment_id=r.assessment_id,
            actor_user_id=r.actor_user_id,
            action=r.action,
            status_from=r.status_from,
            status_to=r.status_to,
            detail_json=r.detail_json,
            ts=r.ts,
        )
        if expected != r.entry_hash or r.prev_hash != prev:
            return False
        prev = r.entry_hash
    return True

