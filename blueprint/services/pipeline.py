"""Entry points the routers call: inline plan generation, background jobs and exports.

Background work is handed to an ``enqueue(event, payload)`` callable so the
HTTP layer decides how it runs (``BackgroundTasks`` in the app, a direct
``steps.run_event`` call in tests).
"""
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, Mapping, Set, Tuple

from sqlmodel import Session, select

from blueprint.config import settings
from blueprint.errors import AlreadyInProgress, NotApproved, NotFound, Unauthorized, NotReady, NoFiles, AssemblyFailure
from blueprint.models import (Job, JobStatus, Export, ExportStatus, PlanStatus, WorkflowSession,
                              ACTIVE_STATUSES)
from blueprint.services import answers, bundle, composer, planner
from blueprint.services.export_docx import build_plan_doc
from blueprint.services.jobs import PLAN_EVENT, EXPORT_EVENT, advance_export
from blueprint.services.kb_store import KnowledgeBase
from blueprint.services.llm import LLMClient

logger = logging.getLogger(__name__)

Enqueue = Callable[[str, Dict[str, Any]], None]

EXPORT_OPTIONS = ("include_user_instructions", "include_quick_start", "include_modules", "include_prompts")


@dataclass(frozen=True)
class PlanResult:
    plan_text: str
    status: str
    plan_id: str


_active_sessions: Set[str] = set()
_active_guard = threading.Lock()


@contextmanager
def session_guard(session_id: str) -> Iterator[None]:
    """Non-blocking per-session lock; a second holder gets AlreadyInProgress."""
    with _active_guard:
        if session_id in _active_sessions:
            raise AlreadyInProgress(f"Plan generation already running for session {session_id}")
        _active_sessions.add(session_id)
    try:
        yield
    finally:
        with _active_guard:
            _active_sessions.discard(session_id)


def expire_stale_jobs(db: Session, session_id: str) -> int:
    cutoff = datetime.utcnow() - timedelta(minutes=settings.JOB_STALE_MINUTES)
    stale = db.exec(select(Job).where(Job.session_id == session_id,
                                      Job.status.in_(ACTIVE_STATUSES),
                                      Job.updated_at < cutoff)).all()
    for job in stale:
        job.status = JobStatus.failed
        job.error_message = f"Job timed out after {settings.JOB_STALE_MINUTES} minutes"
        job.updated_at = datetime.utcnow()
        db.add(job)
        logger.warning("plan job %s is stale, marking failed", job.id)
    if stale:
        db.commit()
    return len(stale)


def active_plan_job(db: Session, session_id: str) -> Job | None:
    expire_stale_jobs(db, session_id)
    return db.exec(select(Job).where(Job.session_id == session_id, Job.status.in_(ACTIVE_STATUSES))
                   .order_by(Job.created_at.desc())).first()


def _reject_if_active(db: Session, session_id: str):
    active = active_plan_job(db, session_id)
    if active is not None:
        raise AlreadyInProgress(f"Plan job {active.id} is still {active.status.value}", job_id=active.id)


def generate_plan(db: Session, llm: LLMClient, kb: KnowledgeBase, user_id: str, session_id: str) -> PlanResult:
    ws = answers.get_owned_session(db, user_id, session_id)
    answers.ensure_mutable(ws)
    existing = planner.get_plan(db, ws.id)
    if existing is not None and existing.status == PlanStatus.approved:
        return PlanResult(existing.display_content, existing.status.value, existing.id)
    with session_guard(ws.id):
        _reject_if_active(db, ws.id)
        phases = answers.aggregate(db, ws.id)
        prompt = composer.compose_plan_prompt(phases, kb, ws.description, ws.target_audience)
        text = planner.generate_plan_text(llm, prompt)
        plan = planner.save_plan(db, ws, text)
    logger.info("session %s: plan %s generated inline", ws.id, plan.id)
    return PlanResult(plan.display_content, plan.status.value, plan.id)


def _dispatch_plan_job(job: Job, enqueue: Enqueue):
    enqueue(PLAN_EVENT, {"job_id": job.id, "session_id": job.session_id, "user_id": job.user_id})


def request_plan_job(db: Session, user_id: str, session_id: str, enqueue: Enqueue) -> Job:
    ws = answers.get_owned_session(db, user_id, session_id)
    answers.ensure_mutable(ws)
    existing = planner.get_plan(db, ws.id)
    if existing is not None and existing.status == PlanStatus.approved:
        now = datetime.utcnow()
        job = Job(session_id=ws.id, user_id=user_id, status=JobStatus.completed, completed_at=now,
                  result={"plan": existing.display_content, "plan_id": existing.id,
                          "status": existing.status.value})
        db.add(job); db.commit(); db.refresh(job)
        return job
    with session_guard(ws.id):
        _reject_if_active(db, ws.id)
        answers.aggregate(db, ws.id)
        job = Job(session_id=ws.id, user_id=user_id)
        db.add(job); db.commit(); db.refresh(job)
    logger.info("session %s: plan job %s queued", ws.id, job.id)
    _dispatch_plan_job(job, enqueue)
    return job


def get_job(db: Session, user_id: str, job_id: str) -> Job:
    job = db.get(Job, job_id)
    if job is None:
        raise NotFound(f"Job {job_id} not found")
    if job.user_id != user_id:
        raise Unauthorized("Job belongs to another user")
    return job


def process_job(db: Session, user_id: str, job_id: str, enqueue: Enqueue) -> Job:
    """Re-dispatch a job that has not completed; finished steps are not repeated."""
    job = get_job(db, user_id, job_id)
    if job.status == JobStatus.completed:
        return job
    answers.ensure_mutable(answers.get_owned_session(db, user_id, job.session_id))
    expire_stale_jobs(db, job.session_id)
    db.refresh(job)
    if job.status == JobStatus.processing:
        raise AlreadyInProgress(f"Plan job {job.id} is still processing", job_id=job.id)
    if job.status == JobStatus.failed:
        job.status = JobStatus.pending
        job.error_message = None
        job.updated_at = datetime.utcnow()
        db.add(job); db.commit(); db.refresh(job)
    logger.info("plan job %s resumed", job.id)
    _dispatch_plan_job(job, enqueue)
    return job


# --- exports ---------------------------------------------------------------

def _export_options(options: Mapping[str, Any] | None) -> Dict[str, bool]:
    options = options or {}
    return {k: bool(options.get(k, True)) for k in EXPORT_OPTIONS}


def expire_stale_exports(db: Session, session_id: str) -> int:
    cutoff = datetime.utcnow() - timedelta(minutes=settings.EXPORT_STALE_MINUTES)
    stale = db.exec(select(Export).where(Export.session_id == session_id,
                                         Export.status.in_(ACTIVE_STATUSES),
                                         Export.created_at < cutoff)).all()
    for export in stale:
        advance_export(db, export, ExportStatus.failed,
                       error=f"Export timed out after {settings.EXPORT_STALE_MINUTES} minutes")
        logger.warning("export %s is stale, marked failed", export.id)
    return len(stale)


def start_export(db: Session, user_id: str, session_id: str, options: Mapping[str, Any] | None,
                 enqueue: Enqueue) -> Export:
    ws = answers.get_owned_session(db, user_id, session_id)
    plan = planner.require_plan(db, ws.id)
    if plan.status != PlanStatus.approved:
        raise NotApproved("Plan must be approved before export")
    expire_stale_exports(db, ws.id)
    inflight = db.exec(select(Export).where(Export.session_id == ws.id, Export.status.in_(ACTIVE_STATUSES))
                       .order_by(Export.created_at.desc())).first()
    requested = _export_options(options)
    if inflight is not None:
        if _export_options(inflight.options) != requested:
            raise AlreadyInProgress(f"Export {inflight.id} is running with different options",
                                    export_id=inflight.id)
        logger.info("session %s: export %s already in flight", ws.id, inflight.id)
        return inflight
    export = Export(session_id=ws.id, user_id=user_id, plan_id=plan.id, options=requested,
                    progress_message="Queued")
    db.add(export); db.commit(); db.refresh(export)
    logger.info("session %s: export %s queued", ws.id, export.id)
    enqueue(EXPORT_EVENT, {"export_id": export.id, "session_id": ws.id, "user_id": user_id,
                           "plan_id": plan.id})
    return export


def get_export(db: Session, user_id: str, export_id: str) -> Export:
    export = db.get(Export, export_id)
    if export is None:
        raise NotFound(f"Export {export_id} not found")
    if export.user_id != user_id:
        raise Unauthorized("Export belongs to another user")
    return export


def get_export_status(db: Session, user_id: str, export_id: str) -> Dict[str, Any]:
    export = get_export(db, user_id, export_id)
    out: Dict[str, Any] = {
        "id": export.id,
        "status": export.status.value,
        "progress": export.progress,
        "progress_message": export.progress_message,
        "error_message": export.error_message,
    }
    if export.status == ExportStatus.completed:
        out["files"] = export.files
    return out


def download_export(db: Session, user_id: str, export_id: str) -> Tuple[str, bytes]:
    export = get_export(db, user_id, export_id)
    if export.status != ExportStatus.completed:
        raise NotReady(f"Export is {export.status.value}, not completed", status=export.status.value)
    try:
        entries = bundle.export_entries(export.files)
    except AssemblyFailure as e:
        raise NoFiles("No files found in export") from e
    ws = db.get(WorkflowSession, export.session_id)
    return bundle.archive_name(ws.description if ws else ""), bundle.write_zip(entries)


def plan_bundle(db: Session, user_id: str, session_id: str) -> Tuple[str, bytes]:
    """Single-document archive built from the answers, with the plan when one exists."""
    ws = answers.get_owned_session(db, user_id, session_id)
    plan = planner.get_plan(db, ws.id)
    entries = bundle.plan_entries(ws, answers.phase_templates(db), answers.group_answers(db, ws.id),
                                  plan.display_content if plan else None)
    return bundle.archive_name(ws.description), bundle.write_zip(entries)


def plan_docx(db: Session, user_id: str, session_id: str) -> Tuple[str, bytes]:
    ws = answers.get_owned_session(db, user_id, session_id)
    plan = planner.require_plan(db, ws.id)
    data = build_plan_doc(ws, plan.display_content, answers.group_answers(db, ws.id))
    stem = bundle.slugify(ws.description)[:50].strip("-") or "saas"
    return f"{stem}-plan.docx", data
