"""Helpers for pulling JSON and code out of free-form model replies."""

import re
from typing import Iterable, Optional

FENCE_RE = re.compile(r"```([a-zA-Z0-9_+-]*)[ \t]*\n(.*?)```", re.DOTALL)


def extract_json_from_llm_response(text: Optional[str]) -> Optional[str]:
    """
    Return the JSON text in ``text``.

    A fenced ```json block wins; otherwise the outermost object or array is
    taken. Returns None when nothing looks like JSON.
    """
    if not text:
        return None
    text = text.strip()

    for language, body in FENCE_RE.findall(text):
        if language.lower() in ("json", ""):
            body = body.strip()
            if body.startswith(("{", "[")):
                return body

    candidates = []
    for opener, closer in (("{", "}"), ("[", "]")):
        start = text.find(opener)
        end = text.rfind(closer)
        if start != -1 and end > start:
            candidates.append((start, text[start:end + 1]))
    if not candidates:
        return None
    # Whichever structure starts first is the outer one
    return min(candidates)[1]


def extract_code_block(text: Optional[str], languages: Iterable[str]) -> Optional[str]:
    """First fenced code block tagged with one of ``languages``."""
    wanted = {lang.lower() for lang in languages}
    for language, body in FENCE_RE.findall(text or ""):
        if language.lower() in wanted:
            return body.strip()
    return None
