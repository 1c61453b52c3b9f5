from fastapi import APIRouter, Depends, Path
from pydantic import BaseModel, Field
from sqlmodel import Session
from typing import Any, List, Optional
from blueprint.deps import get_session, get_user_id
from blueprint.models import AnswerKind, WorkflowSession
from blueprint.services import answers

router = APIRouter()

class SessionCreate(BaseModel):
    description: str = Field(..., min_length=1)
    name: Optional[str] = None
    target_audience: Optional[str] = None

class AnswerIn(BaseModel):
    question_id: str
    question_text: str
    answer_text: Any = ""
    answer_kind: AnswerKind = AnswerKind.short_text

class PhasePayload(BaseModel):
    answers: List[AnswerIn]
    complete: bool = False

def _session_out(ws: WorkflowSession):
    return {"id": ws.id, "name": ws.name, "description": ws.description,
            "target_audience": ws.target_audience, "status": ws.status.value,
            "current_phase": ws.current_phase, "completed_phases": ws.completed_phases}

@router.post("", status_code=201)
def create_session(payload: SessionCreate, db: Session = Depends(get_session),
                   user_id: str = Depends(get_user_id)):
    ws = answers.create_session(db, user_id, payload.description, payload.name, payload.target_audience)
    return _session_out(ws)

@router.get("/{session_id}")
def read_session(session_id: str, db: Session = Depends(get_session), user_id: str = Depends(get_user_id)):
    return _session_out(answers.get_owned_session(db, user_id, session_id))

@router.put("/{session_id}/phases/{phase_number}")
def save_phase(payload: PhasePayload, session_id: str, phase_number: int = Path(..., ge=1, le=12),
               db: Session = Depends(get_session), user_id: str = Depends(get_user_id)):
    ws = answers.get_owned_session(db, user_id, session_id)
    rows = answers.save_phase(db, ws, phase_number, [a.model_dump() for a in payload.answers],
                              complete=payload.complete)
    return {"session": _session_out(ws), "saved": len(rows)}

@router.get("/{session_id}/answers")
def read_answers(session_id: str, db: Session = Depends(get_session), user_id: str = Depends(get_user_id)):
    ws = answers.get_owned_session(db, user_id, session_id)
    phases = answers.aggregate(db, ws.id)
    return {"phases": [{"phase_number": p.phase_number,
                        "answers": [{"question_id": qa.question_id, "question": qa.question, "answer": qa.answer}
                                    for qa in p.items]} for p in phases]}

@router.post("/{session_id}/archive")
def archive(session_id: str, db: Session = Depends(get_session), user_id: str = Depends(get_user_id)):
    ws = answers.get_owned_session(db, user_id, session_id)
    return _session_out(answers.archive_session(db, ws))
