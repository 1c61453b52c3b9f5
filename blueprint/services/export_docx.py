from docx import Document
from blueprint.models import WorkflowSession
from typing import Sequence
from blueprint.services.answers import PhaseAnswers
import io, re

_HEADING = re.compile(r"^(#{1,6})\s+(.*)$")
_BULLET = re.compile(r"^\s*[-*]\s+(.*)$")
_NUMBERED = re.compile(r"^\s*\d+[.)]\s+(.*)$")

def _h(doc, text, lvl=1): doc.add_heading(text, level=lvl)
def _p(doc, text): doc.add_paragraph(text)
def _bullets(doc, items, style="List Bullet"):
    for it in items: doc.add_paragraph(it, style=style)

def _markdown(doc, text: str, base_level: int = 1):
    para = []
    def flush():
        if para:
            _p(doc, " ".join(para)); para.clear()
    for line in text.splitlines():
        if not line.strip() or line.strip() == "---":
            flush(); continue
        m = _HEADING.match(line)
        if m:
            flush(); _h(doc, m.group(2).strip(), min(len(m.group(1)) + base_level - 1, 9)); continue
        m = _BULLET.match(line)
        if m:
            flush(); _bullets(doc, [m.group(1)]); continue
        m = _NUMBERED.match(line)
        if m:
            flush(); _bullets(doc, [m.group(1)], style="List Number"); continue
        para.append(line.strip())
    flush()

def build_plan_doc(ws: WorkflowSession, plan_text: str, phases: Sequence[PhaseAnswers] = ()) -> bytes:
    doc = Document()
    _h(doc, f"Building Plan: {ws.name or ws.description}", 0)
    _p(doc, f"Session: {ws.id}")
    if ws.target_audience:
        _p(doc, f"Target audience: {ws.target_audience}")
    _markdown(doc, plan_text, base_level=1)

    if phases:
        _h(doc, "Questionnaire Answers", 1)
        for phase in phases:
            _h(doc, f"Phase {phase.phase_number}", 2)
            for qa in phase.items:
                _h(doc, qa.question, 3)
                _p(doc, qa.answer)

    buf = io.BytesIO()
    doc.save(buf)
    return buf.getvalue()
