from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel
from sqlmodel import Session
from blueprint.deps import get_session, get_user_id, get_llm, get_kb, background_enqueue
from blueprint.routers.plans import attachment
from blueprint.services import pipeline
from blueprint.services.kb_store import KnowledgeBase
from blueprint.services.llm import LLMClient

router = APIRouter()

class ExportOptions(BaseModel):
    include_user_instructions: bool = True
    include_quick_start: bool = True
    include_modules: bool = True
    include_prompts: bool = True

class ExportRequest(BaseModel):
    session_id: str
    options: ExportOptions = ExportOptions()

@router.post("", status_code=202)
def start(req: ExportRequest, background: BackgroundTasks, db: Session = Depends(get_session),
          user_id: str = Depends(get_user_id), llm: LLMClient = Depends(get_llm),
          kb: KnowledgeBase = Depends(get_kb)):
    export = pipeline.start_export(db, user_id, req.session_id, req.options.model_dump(),
                                   background_enqueue(background, llm, kb))
    return {"export_id": export.id, "status": export.status.value}

@router.get("/{export_id}/status")
def status(export_id: str, db: Session = Depends(get_session), user_id: str = Depends(get_user_id)):
    return pipeline.get_export_status(db, user_id, export_id)

@router.get("/{export_id}/download")
def download(export_id: str, db: Session = Depends(get_session), user_id: str = Depends(get_user_id)):
    filename, data = pipeline.download_export(db, user_id, export_id)
    return attachment(filename, data, "application/zip")
