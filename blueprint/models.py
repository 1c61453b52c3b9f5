from sqlmodel import SQLModel, Field, JSON
from sqlalchemy import Column, Text, UniqueConstraint
from typing import Optional, Dict, Any
from datetime import datetime
from enum import Enum
import uuid

def _uuid() -> str:
    return str(uuid.uuid4())

class SessionStatus(str, Enum):
    in_progress = "in_progress"
    completed = "completed"
    archived = "archived"

class AnswerKind(str, Enum):
    short_text = "short_text"
    long_text = "long_text"
    choice = "choice"
    multi_choice = "multi_choice"
    boolean = "boolean"

class PlanStatus(str, Enum):
    generated = "generated"
    approved = "approved"

class ExportStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"

class JobStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"

ACTIVE_STATUSES = ("pending", "processing")

class WorkflowSession(SQLModel, table=True):
    __tablename__ = "sessions"
    id: str = Field(default_factory=_uuid, primary_key=True)
    user_id: str = Field(index=True)
    description: str
    name: Optional[str] = None
    target_audience: Optional[str] = None
    current_phase: int = 1
    completed_phases: int = 0
    status: SessionStatus = SessionStatus.in_progress
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

class PhaseTemplate(SQLModel, table=True):
    __tablename__ = "phase_templates"
    phase_number: int = Field(primary_key=True)
    title: str
    description: str = ""

class Answer(SQLModel, table=True):
    __tablename__ = "answers"
    __table_args__ = (UniqueConstraint("session_id", "phase_number", "question_id"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: str = Field(foreign_key="sessions.id", index=True)
    phase_number: int = Field(ge=1, le=12)
    question_id: str
    question_text: str
    answer_text: str = Field(sa_column=Column(Text, nullable=False))
    answer_kind: AnswerKind = AnswerKind.short_text
    position: int = 0  # save order within the phase
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

class Plan(SQLModel, table=True):
    __tablename__ = "plans"
    id: str = Field(default_factory=_uuid, primary_key=True)
    session_id: str = Field(foreign_key="sessions.id", unique=True, index=True)
    user_id: str = Field(index=True)
    content: str = Field(sa_column=Column(Text, nullable=False))
    edited_content: Optional[str] = Field(default=None, sa_column=Column(Text))
    status: PlanStatus = PlanStatus.generated
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def display_content(self) -> str:
        return self.edited_content or self.content

class Export(SQLModel, table=True):
    __tablename__ = "exports"
    id: str = Field(default_factory=_uuid, primary_key=True)
    session_id: str = Field(foreign_key="sessions.id", index=True)
    user_id: str = Field(index=True)
    plan_id: Optional[str] = None
    status: ExportStatus = ExportStatus.pending
    progress: int = 0
    progress_message: Optional[str] = None
    error_message: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    files: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

class Job(SQLModel, table=True):
    __tablename__ = "jobs"
    id: str = Field(default_factory=_uuid, primary_key=True)
    session_id: str = Field(foreign_key="sessions.id", index=True)
    user_id: str = Field(index=True)
    job_type: str = "plan_generation"
    status: JobStatus = JobStatus.pending
    result: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error_message: Optional[str] = None
    attempts: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

class JobStep(SQLModel, table=True):
    __tablename__ = "job_steps"
    __table_args__ = (UniqueConstraint("run_id", "name"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: str = Field(index=True)  # job or export id
    name: str
    output: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    completed_at: datetime = Field(default_factory=datetime.utcnow)
