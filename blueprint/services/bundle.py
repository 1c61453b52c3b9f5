"""Turns plans and generated files into named markdown files and zip archives.

Layout for the structured export (names are relied on by downstream agents):

    USER_INSTRUCTIONS.md, README.md, <AGENT_FILENAME>, QUICK_START.md
    modules/<name>/README.md      alphabetical by module name
    prompts/<name>.md             by leading number, non-numeric names last

Every file in the structured export is capped at MAX_FILE_CHARS.

Layout for the single-document export:

    README.md, <AGENT_FILENAME>, COMPLETE-PLAN.md, phases/phase-<N>-<slug>.md
"""
import io
import logging
import re
import zipfile
from datetime import date
from typing import Dict, Any, List, Tuple, Sequence, Mapping

from blueprint.config import settings
from blueprint.errors import AssemblyFailure
from blueprint.models import WorkflowSession, PhaseTemplate
from blueprint.services.answers import PhaseAnswers
from blueprint.services.planner import StructuredPlan, TaskSpec

logger = logging.getLogger(__name__)

Entry = Tuple[str, str]

FILE_KEYS = ("readme", "claude", "user_instructions", "quick_start", "modules", "prompts")

_NUM_PREFIX = re.compile(r"^(\d+)")


def slugify(text: str) -> str:
    s = text.lower()
    s = re.sub(r"[^a-z0-9\s-]", "", s)
    s = re.sub(r"\s+", "-", s)
    s = re.sub(r"-+", "-", s)
    return s.strip("-")


def _prompt_order(name: str):
    m = _NUM_PREFIX.match(name)
    return (0, int(m.group(1)), name) if m else (1, 0, name)


def empty_files() -> Dict[str, Any]:
    return {"readme": "", "claude": "", "user_instructions": "", "quick_start": "",
            "modules": {}, "prompts": {}}


def export_entries(files: Mapping[str, Any] | None) -> List[Entry]:
    if not files:
        raise AssemblyFailure("Export has no files payload")
    entries: List[Entry] = []
    for key, path in (("user_instructions", "USER_INSTRUCTIONS.md"), ("readme", "README.md"),
                      ("claude", settings.AGENT_FILENAME), ("quick_start", "QUICK_START.md")):
        if files.get(key):
            entries.append((path, files[key]))
    modules = files.get("modules") or {}
    for name in sorted(modules):
        entries.append((f"modules/{name}/README.md", modules[name]))
    prompts = files.get("prompts") or {}
    for name in sorted(prompts, key=_prompt_order):
        entries.append((f"prompts/{name}.md", prompts[name]))
    if not entries:
        raise AssemblyFailure("Export files payload is empty")
    return entries


def write_zip(entries: Sequence[Entry]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path, text in entries:
            zf.writestr(path, text)
    data = buf.getvalue()
    logger.info("zip built: %d files, %d bytes", len(entries), len(data))
    return data


def archive_name(description: str, today: date | None = None) -> str:
    today = today or date.today()
    stem = slugify(description)[:50].strip("-") or "saas"
    return f"{stem}-blueprint-{today.isoformat()}.zip"


def render_task(task: TaskSpec) -> str:
    lines = [f"# {task.title}", "", task.description, "", "## Prompt", "", task.prompt, ""]
    if task.expectedOutput:
        lines += ["## Expected Output", "", task.expectedOutput, ""]
    if task.dependencies:
        lines += ["## Depends On", ""] + [f"- {d}" for d in task.dependencies] + [""]
    if task.mcpServers:
        lines += ["## MCP Servers", ""] + [f"- {s}" for s in task.mcpServers] + [""]
    return "\n".join(lines)


def user_instructions(ws: WorkflowSession, module_names: Sequence[str], prompt_names: Sequence[str]) -> str:
    agent = settings.AGENT_FILENAME
    out = [f"# Your Blueprint: {ws.name or ws.description}", "",
           "This bundle turns your questionnaire answers into documentation a coding agent can build from.", "",
           "## What's inside", "",
           "- `README.md`: project overview",
           f"- `{agent}`: instructions the agent reads first",
           "- `QUICK_START.md`: the shortest path to a running project"]
    out += [f"- `modules/{n}/README.md`" for n in module_names]
    out += [f"- `prompts/{n}.md`" for n in prompt_names]
    out += ["", "## How to use it", "",
            f"1. Put `{agent}` at the root of a new repository.",
            "2. Read each module README to understand the architecture.",
            "3. Feed the prompts to your agent in numeric order, one at a time.",
            "4. Verify each step's expected output before moving on.", ""]
    return "\n".join(out)


def quick_start(ws: WorkflowSession, first_prompt: str | None) -> str:
    out = [f"# Quick Start: {ws.name or ws.description}", "",
           "## Prerequisites", "", "- A fresh git repository", "- Access to a coding agent", "",
           "## Steps", "",
           f"1. Copy `{settings.AGENT_FILENAME}` and the `modules/` folder into the repository.",
           f"2. Run the first prompt{f' (`prompts/{first_prompt}.md`)' if first_prompt else ''}.",
           "3. Continue through the remaining prompts in order.", ""]
    return "\n".join(out)


def structured_files(ws: WorkflowSession, structure: StructuredPlan,
                     options: Mapping[str, bool] | None = None) -> Dict[str, Any]:
    options = options or {}
    files = empty_files()
    files["readme"] = structure.readme
    files["claude"] = structure.agent_instructions
    if options.get("include_modules", True):
        files["modules"] = {slugify(m.name) or f"module-{i + 1}": m.content
                            for i, m in enumerate(structure.modules)}
    if options.get("include_prompts", True):
        files["prompts"] = {f"{i + 1:02d}-{slugify(t.id) or 'task'}": render_task(t)
                            for i, t in enumerate(structure.tasks)}
    prompt_names = sorted(files["prompts"], key=_prompt_order)
    if options.get("include_user_instructions", True):
        files["user_instructions"] = user_instructions(ws, sorted(files["modules"]), prompt_names)
    if options.get("include_quick_start", True):
        files["quick_start"] = quick_start(ws, prompt_names[0] if prompt_names else None)
    return bound_files(files)


TRUNCATION_NOTE = "\n\n---\n*Note: Content truncated to meet the {kb}KB file limit.*"


def ensure_size_limit(content: str, limit: int | None = None) -> str:
    limit = limit or settings.MAX_FILE_CHARS
    if len(content) <= limit:
        return content
    note = TRUNCATION_NOTE.format(kb=limit // 1024)
    return content[:limit - len(note)] + note


def bound_files(files: Dict[str, Any], limit: int | None = None) -> Dict[str, Any]:
    """Cap every document in a files payload at ``limit`` characters, noting any cut."""
    out = dict(files)
    for key in ("readme", "claude", "user_instructions", "quick_start"):
        if out.get(key):
            out[key] = ensure_size_limit(out[key], limit)
    for group in ("modules", "prompts"):
        bounded = {}
        for name, text in (out.get(group) or {}).items():
            bounded[name] = ensure_size_limit(text, limit)
            if len(bounded[name]) != len(text):
                logger.warning("%s/%s truncated from %d to %d chars", group, name, len(text), len(bounded[name]))
        out[group] = bounded
    return out


def _phase_heading(number: int, title: str) -> str:
    return f"Phase {number}: {title}"


def complete_plan(ws: WorkflowSession, templates: Sequence[PhaseTemplate],
                  phases: Sequence[PhaseAnswers]) -> str:
    by_phase = {p.phase_number: p for p in phases}
    out = [f"# Complete Plan: {ws.name or ws.description}", ""]
    if ws.target_audience:
        out += [f"**Target audience**: {ws.target_audience}", ""]
    out += ["## Table of Contents", ""]
    for t in templates:
        heading = _phase_heading(t.phase_number, t.title)
        out.append(f"- [{heading}](#{slugify(heading)})")
    out.append("")
    for t in templates:
        out += [f"## {_phase_heading(t.phase_number, t.title)}", ""]
        if t.description:
            out += [t.description, ""]
        phase = by_phase.get(t.phase_number)
        for qa in (phase.items if phase else []):
            out += [f"**Q: {qa.question}**", f"A: {qa.answer}", ""]
        if phase is None:
            out += ["_No answers recorded._", ""]
        out += ["---", ""]
    return "\n".join(out)


def phase_document(t: PhaseTemplate, phase: PhaseAnswers | None) -> str:
    out = [f"# {_phase_heading(t.phase_number, t.title)}", ""]
    if t.description:
        out += [t.description, ""]
    for qa in (phase.items if phase else []):
        out += [f"## {qa.question}", "", qa.answer, ""]
    return "\n".join(out)


def simple_readme(ws: WorkflowSession, templates: Sequence[PhaseTemplate]) -> str:
    out = [f"# {ws.name or ws.description}", "", ws.description, ""]
    if ws.target_audience:
        out += ["## Audience", "", ws.target_audience, ""]
    out += ["## Contents", "", f"- `{settings.AGENT_FILENAME}`: building plan for a coding agent",
            "- `COMPLETE-PLAN.md`: every phase and answer in one document"]
    out += [f"- `phases/phase-{t.phase_number}-{slugify(t.title)}.md`" for t in templates]
    out.append("")
    return "\n".join(out)


def simple_agent_doc(ws: WorkflowSession, plan_text: str | None) -> str:
    body = plan_text or "No building plan has been generated yet. Use COMPLETE-PLAN.md as the source of truth."
    return "\n".join([f"# {settings.AGENT_FILENAME.rsplit('.', 1)[0]}: {ws.name or ws.description}", "",
                      "Read this file first. It is the building plan for this project.", "", body, ""])


def plan_entries(ws: WorkflowSession, templates: Sequence[PhaseTemplate],
                 phases: Sequence[PhaseAnswers], plan_text: str | None = None) -> List[Entry]:
    if not templates:
        raise AssemblyFailure("No phase templates available")
    if not phases or not any(p.items for p in phases):
        raise AssemblyFailure(f"Session {ws.id} has no answers to export")
    by_phase = {p.phase_number: p for p in phases}
    entries: List[Entry] = [
        ("README.md", simple_readme(ws, templates)),
        (settings.AGENT_FILENAME, simple_agent_doc(ws, plan_text)),
        ("COMPLETE-PLAN.md", complete_plan(ws, templates, phases)),
    ]
    for t in templates:
        entries.append((f"phases/phase-{t.phase_number}-{slugify(t.title)}.md",
                        phase_document(t, by_phase.get(t.phase_number))))
    return entries
