import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import List, Generic, TypeVar, Union, Any

from pydantic import BaseModel, ValidationError
from sqlmodel import Session, select

from blueprint.config import settings
from blueprint.errors import ParseFailure, NotFound, InvalidTransition
from blueprint.models import Plan, PlanStatus, WorkflowSession
from blueprint.services import composer
from blueprint.services.composer import ComposedPrompt
from blueprint.services.kb_store import KnowledgeBase
from blueprint.services.llm import LLMClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ModuleSpec(BaseModel):
    name: str
    path: str = ""
    content: str = ""
    dependencies: List[str] = []
    mcpServers: List[str] = []
    constraints: List[str] = []


class TaskSpec(BaseModel):
    id: str
    title: str
    description: str = ""
    prompt: str
    dependencies: List[str] = []
    expectedOutput: str = ""
    mcpServers: List[str] = []


@dataclass(frozen=True)
class Parsed(Generic[T]):
    value: T


@dataclass(frozen=True)
class Fallback(Generic[T]):
    value: T
    reason: str


ParseResult = Union[Parsed[T], Fallback[T]]


@dataclass(frozen=True)
class StructuredPlan:
    modules: List[ModuleSpec]
    tasks: List[TaskSpec]
    readme: str
    agent_instructions: str
    modules_fallback: bool = False
    tasks_fallback: bool = False


_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.S)


def _load_list(raw: str, key: str) -> List[Any]:
    text = raw.strip()
    m = _FENCE.match(text)
    if m:
        text = m.group(1)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseFailure(f"model output is not JSON: {e}") from e
    if isinstance(data, dict):
        data = data.get(key)
    if not isinstance(data, list) or not data:
        raise ParseFailure(f"expected a non-empty '{key}' array")
    return data


def default_modules(description: str) -> List[ModuleSpec]:
    return [
        ModuleSpec(name="auth", path="modules/auth/README.md",
                   content=f"# Authentication Module\n\nImplements user authentication for {description}",
                   dependencies=["database"], mcpServers=["supabase"],
                   constraints=["Use Supabase Auth", "Implement RLS", "Support OAuth"]),
        ModuleSpec(name="database", path="modules/database/README.md",
                   content=f"# Database Module\n\nDatabase schema and migrations for {description}",
                   dependencies=[], mcpServers=["supabase"],
                   constraints=["PostgreSQL with Supabase", "Row Level Security", "Audit trails"]),
        ModuleSpec(name="api", path="modules/api/README.md",
                   content=f"# API Module\n\nREST API endpoints for {description}",
                   dependencies=["database", "auth"], mcpServers=[],
                   constraints=["Typed request/response", "Error handling", "Rate limiting"]),
        ModuleSpec(name="ui", path="modules/ui/README.md",
                   content=f"# UI Module\n\nUser interface components for {description}",
                   dependencies=["api", "auth"], mcpServers=[],
                   constraints=["Component library", "Responsive design", "Accessibility"]),
        ModuleSpec(name="payments", path="modules/payments/README.md",
                   content=f"# Payments Module\n\nSubscription and payment processing for {description}",
                   dependencies=["database", "api"], mcpServers=[],
                   constraints=["Stripe integration", "Webhook handling", "EU VAT compliance"]),
    ]


def default_tasks(modules: List[ModuleSpec]) -> List[TaskSpec]:
    tasks = []
    for i, m in enumerate(modules):
        tasks.append(TaskSpec(
            id=f"setup-{m.name}",
            title=f"Set up {m.name} module",
            description=f"Implement the {m.name} functionality",
            prompt=f"Implement the {m.name} module following the constraints: {', '.join(m.constraints)}",
            mcpServers=list(m.mcpServers),
            expectedOutput=f"Complete {m.name} implementation with all required features",
            dependencies=[f"setup-{modules[i - 1].name}"] if i > 0 else [],
        ))
    return tasks


def parse_modules(raw: str, description: str) -> ParseResult[List[ModuleSpec]]:
    try:
        items = _load_list(raw, "modules")
        modules = [ModuleSpec.model_validate(x) for x in items]
    except (ParseFailure, ValidationError) as e:
        logger.warning("module structure unparseable, using defaults: %s", e)
        return Fallback(default_modules(description), reason=str(e))
    for m in modules:
        if not m.path:
            m.path = f"modules/{m.name}/README.md"
    return Parsed(modules)


def parse_tasks(raw: str, modules: List[ModuleSpec]) -> ParseResult[List[TaskSpec]]:
    try:
        items = _load_list(raw, "prompts")
        return Parsed([TaskSpec.model_validate(x) for x in items])
    except (ParseFailure, ValidationError) as e:
        logger.warning("task prompts unparseable, using defaults: %s", e)
        return Fallback(default_tasks(modules), reason=str(e))


def _ask(llm: LLMClient, prompt: ComposedPrompt, temperature: float, max_tokens: int,
         json_mode: bool = False) -> str:
    return llm.complete(prompt.system, [{"role": "user", "content": prompt.user}],
                        temperature=temperature, max_tokens=max_tokens, json_mode=json_mode)


def generate_plan_text(llm: LLMClient, prompt: ComposedPrompt) -> str:
    text = _ask(llm, prompt, settings.PLAN_TEMPERATURE, settings.PLAN_MAX_TOKENS)
    logger.info("plan generated (%d chars)", len(text))
    return text


def generate_structure(llm: LLMClient, kb: KnowledgeBase, plan_text: str, description: str,
                       audience: str | None = None) -> StructuredPlan:
    temp, tokens = settings.STRUCTURE_TEMPERATURE, settings.STRUCTURE_MAX_TOKENS

    raw = _ask(llm, composer.module_structure_prompt(plan_text, kb, description, audience), temp, tokens, True)
    modules_result = parse_modules(raw, description)
    modules = modules_result.value

    raw = _ask(llm, composer.task_prompts_prompt(modules, description), temp, tokens, True)
    tasks_result = parse_tasks(raw, modules)
    tasks = tasks_result.value

    readme = _ask(llm, composer.readme_prompt(description, audience, [m.name for m in modules], plan_text),
                  temp, tokens)
    agent = _ask(llm, composer.agent_instructions_prompt(description, len(modules), len(tasks), kb),
                 temp, tokens)
    return StructuredPlan(
        modules=modules, tasks=tasks, readme=readme, agent_instructions=agent,
        modules_fallback=isinstance(modules_result, Fallback),
        tasks_fallback=isinstance(tasks_result, Fallback),
    )


def get_plan(db: Session, session_id: str) -> Plan | None:
    return db.exec(select(Plan).where(Plan.session_id == session_id)).first()


def require_plan(db: Session, session_id: str) -> Plan:
    plan = get_plan(db, session_id)
    if plan is None:
        raise NotFound(f"No plan for session {session_id}. Generate a plan first.")
    return plan


def save_plan(db: Session, ws: WorkflowSession, content: str) -> Plan:
    """Upsert the session's single plan. An approved plan is left as it is."""
    plan = get_plan(db, ws.id)
    now = datetime.utcnow()
    if plan is None:
        plan = Plan(session_id=ws.id, user_id=ws.user_id, content=content)
    elif plan.status == PlanStatus.approved:
        logger.info("plan %s already approved, keeping it", plan.id)
        return plan
    else:
        plan.content = content
        plan.edited_content = None
        plan.status = PlanStatus.generated
        plan.updated_at = now
    db.add(plan); db.commit(); db.refresh(plan)
    return plan


def edit_plan(db: Session, plan: Plan, edited_content: str) -> Plan:
    if plan.status == PlanStatus.approved:
        raise InvalidTransition("Approved plans can no longer be edited")
    plan.edited_content = edited_content
    plan.updated_at = datetime.utcnow()
    db.add(plan); db.commit(); db.refresh(plan)
    return plan


def approve_plan(db: Session, plan: Plan) -> Plan:
    plan.status = PlanStatus.approved
    plan.updated_at = datetime.utcnow()
    db.add(plan); db.commit(); db.refresh(plan)
    return plan
