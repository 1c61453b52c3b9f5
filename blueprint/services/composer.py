"""Prompt construction for plan and structure generation. Pure string work."""
from dataclasses import dataclass
from typing import List, Sequence

from blueprint.config import settings
from blueprint.services.answers import PhaseAnswers
from blueprint.services.kb_store import KnowledgeBase

PHASE_SEPARATOR = "\n\n---\n\n"


@dataclass(frozen=True)
class ComposedPrompt:
    system: str
    user: str


PLAN_SYSTEM = """You are an expert SaaS architect and technical planning consultant. Your role is to transform the user's workflow answers into a comprehensive, agent-ready SaaS building plan by analyzing their requirements and applying the structured knowledge bases provided.

Do not simply echo or restate the user's answers. Act as a senior SaaS architect who:
1. Analyzes the raw answers to extract the core business requirements
2. Applies proven patterns, rules, and examples from the knowledge bases
3. Makes specific technology and architecture recommendations with clear rationale
4. Synthesizes everything into a comprehensive, actionable building plan

## KNOWLEDGE BASE CONTENT

{kb1}

---

{kb2}"""

PLAN_USER = """Create a comprehensive SaaS building plan by analyzing these {count}-phase workflow answers and synthesizing them with the knowledge base principles, patterns, and best practices.

Business: {description}
Target Audience: {audience}

## USER'S {count}-PHASE WORKFLOW ANSWERS

{answers}

---

Now generate the complete building plan. Reference specific knowledge base sections throughout to justify every architectural decision."""

STRUCTURE_SYSTEM = """You are a coding-agent specialist who transforms SaaS blueprints into modular, executable documentation.

Your output must:
1. Be modular with files under 50KB each
2. Include clear constraints and requirements
3. Reference appropriate MCP servers (supabase, playwright)
4. Generate executable agent prompts
5. Follow proper markdown formatting with clear hierarchy"""

EXPORT_SYSTEM = """You are creating comprehensive documentation for a SaaS project.
Generate clear, actionable content that can be directly used by developers.
Include specific implementation details, code examples where appropriate, and clear next steps."""


def format_answers(phases: Sequence[PhaseAnswers]) -> str:
    blocks = []
    for phase in phases:
        qas = "\n\n".join(f"Q: {qa.question}\nA: {qa.answer}" for qa in phase.items)
        blocks.append(f"**Phase {phase.phase_number}**:\n{qas}")
    return PHASE_SEPARATOR.join(blocks)


def truncate(text: str, budget: int | None = None) -> str:
    budget = settings.KB_CHAR_BUDGET if budget is None else budget
    return text[:budget]


def compose_plan_prompt(phases: Sequence[PhaseAnswers], kb: KnowledgeBase,
                        description: str = "", audience: str | None = None) -> ComposedPrompt:
    return ComposedPrompt(
        system=PLAN_SYSTEM.format(kb1=truncate(kb.kb1), kb2=truncate(kb.kb2)),
        user=PLAN_USER.format(count=len(phases), description=description or "(not provided)",
                              audience=audience or "(not provided)", answers=format_answers(phases)),
    )


def module_structure_prompt(plan_text: str, kb: KnowledgeBase, description: str,
                            audience: str | None = None) -> ComposedPrompt:
    user = f"""Transform this SaaS blueprint into a modular structure for a coding agent.

Business Idea: {description}
Target Audience: {audience or "(not provided)"}

Building Plan:
{plan_text}

Reference material:
{truncate(kb.kb1)}

{truncate(kb.kb2)}

Create a module structure following these rules:
1. Each module must be under 50KB
2. Modules should be logically grouped (auth, api, database, ui, payments, etc.)
3. Each module needs clear constraints and dependencies
4. Reference appropriate MCP servers (supabase for database/auth, playwright for testing)

Return a JSON object {{"modules": [...]}} where each module is:
{{"name": "auth", "path": "modules/auth/README.md", "content": "Module documentation...", "dependencies": ["database"], "mcpServers": ["supabase"], "constraints": ["Must use Supabase Auth"]}}"""
    return ComposedPrompt(system=STRUCTURE_SYSTEM, user=user)


def task_prompts_prompt(modules: Sequence, description: str) -> ComposedPrompt:
    listing = "\n".join(f"- {m.name}: {', '.join(m.constraints)}" for m in modules)
    user = f"""Create executable coding-agent prompts for implementing this SaaS:

Business: {description}

Modules:
{listing}

Generate specific, actionable prompts that:
1. Reference the correct MCP servers
2. Include clear expected outputs
3. Follow a logical implementation order
4. Are copy-pasteable into a coding agent

Return a JSON object {{"prompts": [...]}} where each prompt is:
{{"id": "setup-auth", "title": "Set up authentication", "description": "Configure email/password and OAuth", "prompt": "Full prompt text...", "mcpServers": ["supabase"], "expectedOutput": "What should be created", "dependencies": ["setup-database"]}}"""
    return ComposedPrompt(system=STRUCTURE_SYSTEM, user=user)


def readme_prompt(description: str, audience: str | None, module_names: List[str],
                  plan_text: str) -> ComposedPrompt:
    user = f"""Create a comprehensive README.md for this SaaS project:

Business: {description}
Target Audience: {audience or "(not provided)"}
Modules: {", ".join(module_names)}

Building Plan:
{plan_text}

Include:
1. Project overview
2. Features list
3. Tech stack
4. Getting started guide
5. Project structure
6. Development workflow
7. Deployment instructions

Use clear markdown formatting with proper headers, lists, and code blocks."""
    return ComposedPrompt(system=EXPORT_SYSTEM, user=user)


def agent_instructions_prompt(description: str, module_count: int, prompt_count: int,
                              kb: KnowledgeBase, filename: str | None = None) -> ComposedPrompt:
    filename = filename or settings.AGENT_FILENAME
    user = f"""Create a {filename} file for this project that guides coding-agent instances.

Business: {description}
Modules: {module_count} modules
Prompts: {prompt_count} implementation prompts

Structure the {filename} to include:
1. Project context and goals
2. Module architecture overview
3. Key constraints and requirements
4. MCP server configuration needs
5. Implementation order and dependencies
6. Common patterns and conventions
7. Testing and validation requirements

Reference these knowledge bases for best practices:
{truncate(kb.kb1)}

{truncate(kb.kb2)}"""
    return ComposedPrompt(system=STRUCTURE_SYSTEM, user=user)
