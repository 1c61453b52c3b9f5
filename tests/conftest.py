import os

os.environ["DB_URL"] = "sqlite:///:memory:"
os.environ["OPENAI_API_KEY"] = ""

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session

from blueprint import deps
from blueprint.main import app
from blueprint.services import answers, pipeline
from blueprint.services.kb_store import KnowledgeBase


class FakeLLM:
    """Scripted stand-in for LLMClient; records every call."""

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls = []

    def complete(self, system, messages, model=None, temperature=0.7, max_tokens=4000, json_mode=False):
        self.calls.append({"system": system, "messages": messages, "json_mode": json_mode,
                           "temperature": temperature, "max_tokens": max_tokens})
        if self.replies:
            reply = self.replies.pop(0)
            if isinstance(reply, Exception):
                raise reply
            return reply
        return "{}" if json_mode else "# Building Plan\n\n## Overview\n\nGenerated plan."


@pytest.fixture(autouse=True)
def fresh_db():
    SQLModel.metadata.drop_all(deps.engine)
    SQLModel.metadata.create_all(deps.engine)
    with Session(deps.engine) as s:
        deps.seed_phase_templates(s)
    pipeline._active_sessions.clear()
    yield


@pytest.fixture
def db():
    with Session(deps.engine) as s:
        yield s


@pytest.fixture
def kb():
    return KnowledgeBase(kb1="KB one: product principles", kb2="KB two: architecture patterns")


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def client(llm, kb):
    app.dependency_overrides[deps.get_llm] = lambda: llm
    app.dependency_overrides[deps.get_kb] = lambda: kb
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_session(db):
    """Create a session for ``user_id`` with one Q1/A1 answer in each of the first ``phases`` phases."""
    def make(user_id="user-1", phases=12, description="Invoice tracking for freelancers"):
        ws = answers.create_session(db, user_id, description, name="Invoicer", target_audience="Freelancers")
        for n in range(1, phases + 1):
            answers.save_phase(db, ws, n, [{"question_id": "q1", "question_text": "Q1", "answer_text": "A1"}],
                               complete=True)
        return ws
    return make
