from fastapi import APIRouter, BackgroundTasks, Depends, Response
from pydantic import BaseModel, Field
from sqlmodel import Session
from blueprint.deps import get_session, get_user_id, get_llm, get_kb, background_enqueue
from blueprint.models import Plan
from blueprint.services import answers, pipeline, planner
from blueprint.services.kb_store import KnowledgeBase
from blueprint.services.llm import LLMClient

router = APIRouter()

DOCX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

class PlanEdit(BaseModel):
    content: str = Field(..., min_length=1)

def _plan_out(plan: Plan):
    return {"id": plan.id, "session_id": plan.session_id, "status": plan.status.value,
            "content": plan.content, "edited_content": plan.edited_content,
            "display_content": plan.display_content}

def attachment(filename: str, data: bytes, media_type: str) -> Response:
    return Response(content=data, media_type=media_type,
                    headers={"Content-Disposition": f'attachment; filename="{filename}"'})

@router.post("/{session_id}/generate")
def generate(session_id: str, db: Session = Depends(get_session), user_id: str = Depends(get_user_id),
             llm: LLMClient = Depends(get_llm), kb: KnowledgeBase = Depends(get_kb)):
    result = pipeline.generate_plan(db, llm, kb, user_id, session_id)
    return {"plan": result.plan_text, "status": result.status, "plan_id": result.plan_id}

@router.post("/{session_id}/jobs", status_code=202)
def request_job(session_id: str, background: BackgroundTasks, db: Session = Depends(get_session),
                user_id: str = Depends(get_user_id), llm: LLMClient = Depends(get_llm),
                kb: KnowledgeBase = Depends(get_kb)):
    job = pipeline.request_plan_job(db, user_id, session_id, background_enqueue(background, llm, kb))
    return {"job_id": job.id, "status": job.status.value}

@router.get("/{session_id}")
def read_plan(session_id: str, db: Session = Depends(get_session), user_id: str = Depends(get_user_id)):
    ws = answers.get_owned_session(db, user_id, session_id)
    return _plan_out(planner.require_plan(db, ws.id))

@router.put("/{session_id}/content")
def edit(session_id: str, payload: PlanEdit, db: Session = Depends(get_session),
         user_id: str = Depends(get_user_id)):
    ws = answers.get_owned_session(db, user_id, session_id)
    return _plan_out(planner.edit_plan(db, planner.require_plan(db, ws.id), payload.content))

@router.post("/{session_id}/approve")
def approve(session_id: str, db: Session = Depends(get_session), user_id: str = Depends(get_user_id)):
    ws = answers.get_owned_session(db, user_id, session_id)
    return _plan_out(planner.approve_plan(db, planner.require_plan(db, ws.id)))

@router.get("/{session_id}/bundle")
def bundle(session_id: str, db: Session = Depends(get_session), user_id: str = Depends(get_user_id)):
    filename, data = pipeline.plan_bundle(db, user_id, session_id)
    return attachment(filename, data, "application/zip")

@router.get("/{session_id}/docx")
def docx(session_id: str, db: Session = Depends(get_session), user_id: str = Depends(get_user_id)):
    filename, data = pipeline.plan_docx(db, user_id, session_id)
    return attachment(filename, data, DOCX_MEDIA_TYPE)
