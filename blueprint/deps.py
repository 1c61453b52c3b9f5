from fastapi import Header, BackgroundTasks
from sqlmodel import SQLModel, create_engine, Session, select
from sqlalchemy.pool import StaticPool
from blueprint.config import settings
from blueprint.models import PhaseTemplate
from blueprint.phases import DEFAULT_PHASES
from blueprint.services import kb_store, steps
from blueprint.services.llm import LLMClient
import os

def _make_engine(url: str):
    if not url.startswith("sqlite"):
        return create_engine(url, echo=False)
    if ":memory:" in url:
        return create_engine(url, echo=False, connect_args={"check_same_thread": False},
                             poolclass=StaticPool)
    path = url.split("///", 1)[-1]
    if os.path.dirname(path):
        os.makedirs(os.path.dirname(path), exist_ok=True)
    return create_engine(url, echo=False, connect_args={"check_same_thread": False})

engine = _make_engine(settings.DB_URL)

def get_session():
    with Session(engine) as session:
        yield session

def init_db():
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        seed_phase_templates(session)

def seed_phase_templates(session: Session):
    if session.exec(select(PhaseTemplate)).first():
        return
    for number, title, description in DEFAULT_PHASES:
        session.add(PhaseTemplate(phase_number=number, title=title, description=description))
    session.commit()

def get_user_id(x_user_id: str = Header(..., alias="X-User-Id")) -> str:
    # authentication itself lives upstream; this is the owning user id it resolved
    return x_user_id

_llm: LLMClient | None = None

def get_llm() -> LLMClient:
    global _llm
    if _llm is None:
        _llm = LLMClient()
    return _llm

def get_kb() -> kb_store.KnowledgeBase:
    return kb_store.get()

def background_enqueue(background: BackgroundTasks, llm: LLMClient, kb: kb_store.KnowledgeBase):
    """Adapter handing pipeline events to FastAPI's BackgroundTasks."""
    def enqueue(event: str, payload: dict):
        background.add_task(steps.run_event, event, payload, llm, kb)
    return enqueue
