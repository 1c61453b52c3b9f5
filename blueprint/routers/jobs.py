from fastapi import APIRouter, BackgroundTasks, Depends
from sqlmodel import Session
from blueprint.deps import get_session, get_user_id, get_llm, get_kb, background_enqueue
from blueprint.models import Job
from blueprint.services import pipeline
from blueprint.services.kb_store import KnowledgeBase
from blueprint.services.llm import LLMClient

router = APIRouter()

def _job_out(job: Job):
    return {"id": job.id, "session_id": job.session_id, "status": job.status.value,
            "result": job.result, "error_message": job.error_message, "attempts": job.attempts}

@router.get("/{job_id}")
def read_job(job_id: str, db: Session = Depends(get_session), user_id: str = Depends(get_user_id)):
    return _job_out(pipeline.get_job(db, user_id, job_id))

@router.post("/{job_id}/process", status_code=202)
def process(job_id: str, background: BackgroundTasks, db: Session = Depends(get_session),
            user_id: str = Depends(get_user_id), llm: LLMClient = Depends(get_llm),
            kb: KnowledgeBase = Depends(get_kb)):
    job = pipeline.process_job(db, user_id, job_id, background_enqueue(background, llm, kb))
    return _job_out(job)
