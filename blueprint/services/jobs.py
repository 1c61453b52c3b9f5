"""Background handlers for plan generation and export packaging, plus the export state machine."""
import logging
from datetime import datetime
from typing import Any, Dict, List

from sqlmodel import Session

from blueprint.errors import NotFound, NotApproved, InvalidTransition
from blueprint.models import Job, JobStatus, Export, ExportStatus, Plan, PlanStatus, WorkflowSession
from blueprint.services import answers, bundle, composer, planner
from blueprint.services.answers import PhaseAnswers, QA
from blueprint.services.planner import StructuredPlan, ModuleSpec, TaskSpec
from blueprint.services.steps import StepRunner, register

logger = logging.getLogger(__name__)

PLAN_EVENT = "plan/generate.requested"
EXPORT_EVENT = "export/generate.requested"

_EXPORT_FORWARD = {
    ExportStatus.pending: {ExportStatus.processing, ExportStatus.failed},
    ExportStatus.processing: {ExportStatus.processing, ExportStatus.completed, ExportStatus.failed},
    ExportStatus.completed: set(),
    ExportStatus.failed: set(),
}

TERMINAL_EXPORT = (ExportStatus.completed, ExportStatus.failed)


def advance_export(db: Session, export: Export, status: ExportStatus, progress: int | None = None,
                   message: str | None = None, error: str | None = None) -> Export:
    """Move an export forward; progress may be rewritten while processing, nothing moves back."""
    current = ExportStatus(export.status)
    if status not in _EXPORT_FORWARD[current]:
        raise InvalidTransition(f"Export {export.id} cannot go from {current.value} to {status.value}")
    export.status = status
    if progress is not None:
        export.progress = max(0, min(100, progress))
    if message is not None:
        export.progress_message = message
    if error is not None:
        export.error_message = error
    now = datetime.utcnow()
    if status in TERMINAL_EXPORT:
        export.completed_at = now
    export.updated_at = now
    db.add(export); db.commit(); db.refresh(export)
    return export


def _phases_to_json(phases: List[PhaseAnswers]) -> List[Dict[str, Any]]:
    return [{"phase_number": p.phase_number,
             "items": [{"question_id": qa.question_id, "question": qa.question, "answer": qa.answer}
                       for qa in p.items]} for p in phases]


def _phases_from_json(data: List[Dict[str, Any]]) -> List[PhaseAnswers]:
    return [PhaseAnswers(d["phase_number"], [QA(**qa) for qa in d["items"]]) for d in data]


def _structure_to_json(sp: StructuredPlan) -> Dict[str, Any]:
    return {"modules": [m.model_dump() for m in sp.modules], "tasks": [t.model_dump() for t in sp.tasks],
            "readme": sp.readme, "agent_instructions": sp.agent_instructions,
            "modules_fallback": sp.modules_fallback, "tasks_fallback": sp.tasks_fallback}


def _structure_from_json(d: Dict[str, Any]) -> StructuredPlan:
    return StructuredPlan(modules=[ModuleSpec.model_validate(m) for m in d["modules"]],
                          tasks=[TaskSpec.model_validate(t) for t in d["tasks"]],
                          readme=d["readme"], agent_instructions=d["agent_instructions"],
                          modules_fallback=d.get("modules_fallback", False),
                          tasks_fallback=d.get("tasks_fallback", False))


# --- plan generation -------------------------------------------------------

def _set_job(db: Session, job: Job, status: JobStatus, **fields) -> str:
    job.status = status
    for k, v in fields.items():
        setattr(job, k, v)
    job.updated_at = datetime.utcnow()
    db.add(job); db.commit(); db.refresh(job)
    return status.value


def fail_plan_job(db: Session, payload: Dict[str, Any], error: str):
    job = db.get(Job, payload["job_id"])
    if job is None or job.status == JobStatus.completed:
        return
    _set_job(db, job, JobStatus.failed, error_message=error)
    logger.error("plan job %s failed: %s", job.id, error)


@register(PLAN_EVENT, run_key="job_id", on_failure=fail_plan_job)
def generate_plan_job(db: Session, steps: StepRunner, payload: Dict[str, Any], llm, kb):
    job = db.get(Job, payload["job_id"])
    if job is None:
        raise NotFound(f"Job {payload['job_id']} not found")
    if job.status == JobStatus.completed:
        return job.result
    job.attempts += 1
    db.add(job); db.commit()
    ws = answers.get_owned_session(db, payload["user_id"], payload["session_id"])
    answers.ensure_mutable(ws)

    steps.run("mark-processing", lambda: _set_job(db, job, JobStatus.processing))
    if job.status != JobStatus.processing:  # resumed after the checkpoint was written
        _set_job(db, job, JobStatus.processing)
    phases = _phases_from_json(steps.run("fetch-answers", lambda: _phases_to_json(answers.aggregate(db, ws.id))))
    plan_text = steps.run("call-model", lambda: planner.generate_plan_text(
        llm, composer.compose_plan_prompt(phases, kb, ws.description, ws.target_audience)))
    plan_id = steps.run("save-plan", lambda: planner.save_plan(db, ws, plan_text).id)
    result = {"plan": plan_text, "plan_id": plan_id, "status": PlanStatus.generated.value}
    steps.run("mark-completed", lambda: _set_job(db, job, JobStatus.completed, result=result,
                                                 error_message=None, completed_at=datetime.utcnow()))
    logger.info("plan job %s completed (plan %s)", job.id, plan_id)
    return result


# --- export ----------------------------------------------------------------

def fail_export(db: Session, payload: Dict[str, Any], error: str):
    export = db.get(Export, payload["export_id"])
    if export is None or export.status in TERMINAL_EXPORT:
        return
    advance_export(db, export, ExportStatus.failed, error=error)
    logger.error("export %s failed: %s", export.id, error)


def _fetch_approved_plan(db: Session, export: Export, plan_id: str) -> str:
    advance_export(db, export, ExportStatus.processing, 10, "Loading approved plan...")
    plan = db.get(Plan, plan_id)
    if plan is None:
        raise NotFound(f"Plan {plan_id} not found")
    if plan.status != PlanStatus.approved:
        raise NotApproved("Plan must be approved before export")
    return plan.display_content


def _generate_structure(db: Session, export: Export, ws: WorkflowSession, plan_text: str, llm, kb):
    advance_export(db, export, ExportStatus.processing, 15, "Generating documentation with AI...")
    structure = planner.generate_structure(llm, kb, plan_text, ws.description, ws.target_audience)
    advance_export(db, export, ExportStatus.processing, 80, "Generated core documentation files...")
    return _structure_to_json(structure)


def _assemble(db: Session, export: Export, ws: WorkflowSession, structure: StructuredPlan):
    advance_export(db, export, ExportStatus.processing, 90, "Packaging files...")
    files = bundle.structured_files(ws, structure, export.options or {})
    entries = bundle.export_entries(files)  # raises AssemblyFailure before anything is stored
    logger.info("export %s: %d files, largest %d chars", export.id, len(entries),
                max(len(text) for _, text in entries))
    return files


def _complete(db: Session, export: Export, files: Dict[str, Any]) -> str:
    export.files = files
    advance_export(db, export, ExportStatus.completed, 100, "Export complete!")
    return export.status.value


@register(EXPORT_EVENT, run_key="export_id", on_failure=fail_export)
def generate_export_job(db: Session, steps: StepRunner, payload: Dict[str, Any], llm, kb):
    export = db.get(Export, payload["export_id"])
    if export is None:
        raise NotFound(f"Export {payload['export_id']} not found")
    if export.status in TERMINAL_EXPORT:
        return export.status.value
    ws = answers.get_owned_session(db, payload["user_id"], payload["session_id"])

    steps.run("mark-processing", lambda: advance_export(
        db, export, ExportStatus.processing, 5, "Starting export generation...").status.value)
    plan_text = steps.run("fetch-plan", lambda: _fetch_approved_plan(db, export, payload["plan_id"]))
    structure = _structure_from_json(
        steps.run("generate-structure", lambda: _generate_structure(db, export, ws, plan_text, llm, kb)))
    files = steps.run("assemble-files", lambda: _assemble(db, export, ws, structure))
    status = steps.run("save-and-complete", lambda: _complete(db, export, files))
    logger.info("export %s completed (%d modules, %d prompts)", export.id,
                len(files.get("modules", {})), len(files.get("prompts", {})))
    return status
