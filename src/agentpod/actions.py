"""Action markers embedded in agent replies: ``<!--action:TYPE|P1|P2-->``."""

import re
from typing import Any

_ACTION_RE = re.compile(r"<!--action:([^>]+)-->")
_MARKER_OPEN = "<!--"
_MARKER_CLOSE = "-->"


def parse_actions(text: str) -> tuple[str, list[dict[str, Any]]]:
    """Return the text with markers removed and the parsed actions."""
    actions: list[dict[str, Any]] = []

    def collect(match: re.Match) -> str:
        kind, *params = match.group(1).split("|")
        if kind:
            actions.append({"type": kind, "params": params})
        return ""

    clean = _ACTION_RE.sub(collect, text).strip()
    return clean, actions


def strip_actions(text: str) -> str:
    return _ACTION_RE.sub("", text).strip()


def open_marker_at(text: str) -> int:
    """Index of a trailing marker (or marker prefix) not closed yet, or -1."""
    start = text.rfind(_MARKER_OPEN)
    if start != -1 and _MARKER_CLOSE not in text[start:]:
        return start
    for size in range(len(_MARKER_OPEN) - 1, 0, -1):
        if text.endswith(_MARKER_OPEN[:size]):
            return len(text) - size
    return -1


def mask_actions(text: str) -> str:
    """Blank out complete markers, keeping every other character in place."""
    return _ACTION_RE.sub(lambda m: "_" * len(m.group(0)), text)
