"""Process-wide cache of the two reference documents fed to the composer.

Loaded once at startup and handed around as an immutable value. ``reload``
swaps the cached instance; nothing re-reads the files per request.
"""
import logging
import os
import threading
from dataclasses import dataclass

from docx import Document

from blueprint.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KnowledgeBase:
    kb1: str = ""
    kb2: str = ""


_lock = threading.Lock()
_current: KnowledgeBase | None = None


def _docx_to_markdown(path: str) -> str:
    doc = Document(path)
    lines = []
    for p in doc.paragraphs:
        t = (p.text or "").strip()
        if not t:
            continue
        style = (p.style.name if p.style is not None and p.style.name else "").lower()
        if style == "title":
            lines.append(f"# {t}")
        elif style.startswith("heading"):
            level = style.replace("heading", "").strip()
            depth = int(level) if level.isdigit() else 1
            lines.append(f"{'#' * min(depth + 1, 6)} {t}")
        elif style.startswith("list"):
            lines.append(f"- {t}")
        else:
            lines.append(t)
    return "\n\n".join(lines)


def read_document(path: str) -> str:
    if not os.path.exists(path):
        logger.warning("knowledge base document missing: %s", path)
        return ""
    if path.lower().endswith(".docx"):
        return _docx_to_markdown(path)
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def load(kb1_path: str | None = None, kb2_path: str | None = None) -> KnowledgeBase:
    kb = KnowledgeBase(
        kb1=read_document(kb1_path or settings.KB1_PATH),
        kb2=read_document(kb2_path or settings.KB2_PATH),
    )
    logger.info("knowledge base loaded (kb1=%d chars, kb2=%d chars)", len(kb.kb1), len(kb.kb2))
    return kb


def get() -> KnowledgeBase:
    global _current
    if _current is None:
        with _lock:
            if _current is None:
                _current = load()
    return _current


def reload() -> KnowledgeBase:
    global _current
    fresh = load()
    with _lock:
        _current = fresh
    return fresh
