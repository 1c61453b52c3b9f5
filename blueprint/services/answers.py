import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Dict, Any, Iterable

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select, func

from blueprint.config import settings
from blueprint.errors import NotFound, Unauthorized, IncompletePhases, SessionArchived
from blueprint.models import WorkflowSession, Answer, AnswerKind, SessionStatus, PhaseTemplate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QA:
    question_id: str
    question: str
    answer: str


@dataclass(frozen=True)
class PhaseAnswers:
    phase_number: int
    items: List[QA] = field(default_factory=list)


def create_session(db: Session, user_id: str, description: str, name: str | None = None,
                   target_audience: str | None = None) -> WorkflowSession:
    ws = WorkflowSession(user_id=user_id, description=description, name=name,
                         target_audience=target_audience)
    db.add(ws); db.commit(); db.refresh(ws)
    logger.info("session %s created for user %s", ws.id, user_id)
    return ws


def get_owned_session(db: Session, user_id: str, session_id: str) -> WorkflowSession:
    ws = db.get(WorkflowSession, session_id)
    if ws is None:
        raise NotFound(f"Session {session_id} not found")
    if ws.user_id != user_id:
        raise Unauthorized("Session belongs to another user")
    return ws


def archive_session(db: Session, ws: WorkflowSession) -> WorkflowSession:
    ws.status = SessionStatus.archived
    ws.updated_at = datetime.utcnow()
    db.add(ws); db.commit(); db.refresh(ws)
    return ws


def ensure_mutable(ws: WorkflowSession):
    if ws.status == SessionStatus.archived:
        raise SessionArchived(f"Session {ws.id} is archived")


def save_phase(db: Session, ws: WorkflowSession, phase_number: int,
               answers: Iterable[Dict[str, Any]], complete: bool = False) -> List[Answer]:
    """Upsert answers keyed on (session, phase, question) and refresh session progress.

    If a concurrent save inserts one of the same keys first, the flush fails on
    the unique constraint; the batch is then re-applied as updates over the
    committed rows, so the later save still wins.
    """
    ensure_mutable(ws)
    items = list(answers)
    try:
        saved = _upsert_answers(db, ws.id, phase_number, items)
    except IntegrityError:
        db.rollback()
        logger.info("session %s phase %d: key inserted concurrently, re-applying as update",
                    ws.id, phase_number)
        saved = _upsert_answers(db, ws.id, phase_number, items)

    now = datetime.utcnow()
    ws.completed_phases = count_phases(db, ws.id)
    if complete:
        ws.current_phase = min(max(ws.current_phase, phase_number + 1), settings.REQUIRED_PHASES)
    if ws.completed_phases >= settings.REQUIRED_PHASES and ws.status == SessionStatus.in_progress:
        ws.status = SessionStatus.completed
        ws.completed_at = now
    ws.updated_at = now
    db.add(ws); db.commit()
    for row in saved:
        db.refresh(row)
    logger.info("session %s phase %d saved (%d answers, %d/%d phases)", ws.id, phase_number,
                len(saved), ws.completed_phases, settings.REQUIRED_PHASES)
    return saved


def _upsert_answers(db: Session, session_id: str, phase_number: int,
                    items: List[Dict[str, Any]]) -> List[Answer]:
    existing = {
        a.question_id: a for a in db.exec(
            select(Answer).where(Answer.session_id == session_id, Answer.phase_number == phase_number)
        )
    }
    next_position = max((a.position for a in existing.values()), default=-1) + 1
    saved = []
    now = datetime.utcnow()
    for item in items:
        qid = str(item["question_id"])
        row = existing.get(qid)
        if row is None:
            row = Answer(session_id=session_id, phase_number=phase_number, question_id=qid,
                         question_text=item.get("question_text", ""), answer_text="",
                         position=next_position)
            next_position += 1
            existing[qid] = row
        row.question_text = item.get("question_text") or row.question_text
        row.answer_text = _answer_to_text(item.get("answer_text", ""))
        row.answer_kind = AnswerKind(item.get("answer_kind", AnswerKind.short_text))
        row.updated_at = now
        db.add(row)
        saved.append(row)
    db.flush()
    return saved


def _answer_to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value)


def count_phases(db: Session, session_id: str) -> int:
    stmt = select(func.count(func.distinct(Answer.phase_number))).where(Answer.session_id == session_id)
    return int(db.exec(stmt).one())


def group_answers(db: Session, session_id: str) -> List[PhaseAnswers]:
    rows = db.exec(
        select(Answer).where(Answer.session_id == session_id)
        .order_by(Answer.phase_number, Answer.position, Answer.id)
    ).all()
    grouped: Dict[int, List[QA]] = {}
    for r in rows:
        grouped.setdefault(r.phase_number, []).append(QA(r.question_id, r.question_text, r.answer_text))
    return [PhaseAnswers(n, grouped[n]) for n in sorted(grouped)]


def aggregate(db: Session, session_id: str) -> List[PhaseAnswers]:
    """All answers of a session grouped by ascending phase, save order within a phase.

    Raises IncompletePhases when fewer than the required number of distinct
    phases have at least one answer.
    """
    phases = group_answers(db, session_id)
    if len(phases) < settings.REQUIRED_PHASES:
        raise IncompletePhases(found=len(phases), required=settings.REQUIRED_PHASES)
    return phases


def phase_templates(db: Session) -> List[PhaseTemplate]:
    return list(db.exec(select(PhaseTemplate).order_by(PhaseTemplate.phase_number)).all())
