"""
Request focus classification.
Decides whether a change request targets backend or frontend code so planning
and fallback file selection can favour the right part of the repository.
"""

import logging
import re
from typing import List

logger = logging.getLogger(__name__)

BACKEND_KEYWORDS = ("backend", "server", "api", "database")
FRONTEND_KEYWORDS = ("frontend", "ui", "client", "react", "vue")


def _keyword_re(words) -> "re.Pattern":
    return re.compile(r"\b(?:" + "|".join(re.escape(w) for w in words) + r")s?\b", re.IGNORECASE)


_BACKEND_RE = _keyword_re(BACKEND_KEYWORDS)
_FRONTEND_RE = _keyword_re(FRONTEND_KEYWORDS)


def classify_request_focus(prompt: str) -> str:
    """Return "backend", "frontend" or "general". Backend wins when both match."""
    text = prompt or ""
    if _BACKEND_RE.search(text):
        focus = "backend"
    elif _FRONTEND_RE.search(text):
        focus = "frontend"
    else:
        focus = "general"
    logger.info(f"Request focus: {focus} for: {text[:80]}")
    return focus


def focus_hint(focus: str) -> str:
    if focus == "backend":
        return "BACKEND-FOCUSED REQUEST: prioritize server-side files and logic."
    if focus == "frontend":
        return "FRONTEND-FOCUSED REQUEST: prioritize client-side files and UI."
    return ""


def select_focus_files(focus: str, backend_files: List[str], frontend_files: List[str],
                       key_files: List[str], limit: int = 3) -> List[str]:
    """Pick a small set of files matching the request focus.

    The focused group comes first; general requests start from the key files.
    Later groups are only used when the earlier ones are empty.
    """
    if focus == "frontend":
        order = (frontend_files, key_files, backend_files)
    elif focus == "backend":
        order = (backend_files, key_files, frontend_files)
    else:
        order = (key_files, backend_files, frontend_files)
    for group in order:
        if group:
            return list(group[:limit])
    return []
