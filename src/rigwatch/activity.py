"""Reduce a terminal pane capture to a short activity summary."""

from __future__ import annotations

import re
from collections import deque
from dataclasses import dataclass
from threading import Lock

from .util import shorten

TOOL_ARGS_MAX = 50
ACTIVITY_TEXT_MAX = 100
HISTORY_LIMIT = 3
ROLLING_LIMIT = 5
PROMPT_WINDOW = 8
WAITING_LINES = 3

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]|\x1b\][^\x07]*\x07")
_PROCESSING_RE = re.compile(
    r"[✻✶✢✳✽]\s+(?P<label>.+?)\s*(?:…|\.\.\.)"
    r"\s*(?:\((?:esc to interrupt\s*·\s*|ctrl\+c to interrupt\s*·\s*)?"
    r"(?P<elapsed>\d+m?\s*\d*s?)[^)]*\))?"
)
_TOOL_RE = re.compile(r"⏺\s+(?P<tool>\w+)\((?P<args>.*)\)")
_RUNNING_RE = re.compile(r"Running(?:…|\.{2,})\s*(?P<cmd>\S.*)")
_COMPLETION_RE = re.compile(r"^[✻✶✢✳✽]\s+\w+\s+for\s+\d+")
_BUSY_GLYPH_RE = re.compile(r"[✻✶✢✳✽]\s+.+?(?:…|\.\.\.)|⏺\s+\w+\(")
_SEPARATOR_RE = re.compile(r"^[─━═\-_=┄┈\s]+$")
_BOX_RE = re.compile(r"^[╭╮╰╯│┃├┤┌┐└┘┬┴┼▐▛▜▘▝█\s]+$")
_PROMPT_GLYPHS = ("❯",)
_HINTS = (
    "bypass permissions",
    "shift+tab",
    "? for shortcuts",
    "/ide for",
    "⏵⏵",
    "↵ send",
    "esc to interrupt",
    "ctrl+c to interrupt",
)


@dataclass(frozen=True)
class ActivitySummary:
    activity: str
    history: tuple[str, ...] = ()
    duration: str | None = None
    tool: str | None = None


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def _classify(line: str) -> tuple[str, str | None, str | None] | None:
    """Return ``(label, duration, tool)`` for an activity line, else None."""
    match = _PROCESSING_RE.search(line)
    if match:
        elapsed = match.group("elapsed")
        return match.group("label").strip(), elapsed.strip() if elapsed else None, None
    match = _TOOL_RE.search(line)
    if match:
        tool = match.group("tool")
        args = shorten(match.group("args"), TOOL_ARGS_MAX)
        return f"{tool}: {args}", None, tool
    match = _RUNNING_RE.search(line)
    if match:
        return f"Running: {match.group('cmd').strip()}", None, None
    return None


def _is_separator(line: str) -> bool:
    trimmed = line.strip()
    return not trimmed or bool(_SEPARATOR_RE.match(trimmed))


def is_chrome(line: str) -> bool:
    trimmed = line.strip()
    if _is_separator(trimmed):
        return True
    if _BOX_RE.match(trimmed):
        return True
    if trimmed.startswith(("╭", "╰")):
        return True
    if trimmed.startswith("│") and trimmed.endswith("│"):
        return True
    if trimmed.startswith(_PROMPT_GLYPHS):
        return True
    if _COMPLETION_RE.match(trimmed):
        return True
    return any(hint in trimmed for hint in _HINTS)


def _at_prompt(lines: list[str]) -> bool:
    recent = [line.strip() for line in lines if line.strip()][-PROMPT_WINDOW:]
    return any(line.strip("│ ").startswith(_PROMPT_GLYPHS) for line in recent)


def reduce_activity(capture: str) -> ActivitySummary:
    lines = strip_ansi(capture).replace("\r", "").split("\n")

    current: tuple[str, str | None, str | None] | None = None
    history: list[str] = []
    for line in reversed(lines):
        classified = _classify(line)
        if classified is None:
            continue
        if current is None:
            current = classified
            continue
        label = classified[0]
        if label != current[0] and label not in history:
            history.append(label)
            if len(history) >= HISTORY_LIMIT:
                break

    if current is not None:
        label, duration, tool = current
        return ActivitySummary(label, tuple(history), duration=duration, tool=tool)

    if _at_prompt(lines) and not any(_BUSY_GLYPH_RE.search(line) for line in lines):
        content = [line.strip() for line in lines if not is_chrome(line)]
        tail = " ".join(content[-WAITING_LINES:]).strip()
        if tail:
            return ActivitySummary(f"Waiting: {shorten(tail, ACTIVITY_TEXT_MAX)}")
        return ActivitySummary("At prompt")

    for line in reversed(lines):
        if not _is_separator(line):
            return ActivitySummary(shorten(line, ACTIVITY_TEXT_MAX))
    return ActivitySummary("No output")


class ActivityHistory:
    """Rolling per-session timeline of distinct activity labels, newest first."""

    def __init__(self, limit: int = ROLLING_LIMIT) -> None:
        self.limit = limit
        self._entries: dict[str, deque[str]] = {}
        self._lock = Lock()

    def record(self, session: str, activity: str) -> list[str]:
        with self._lock:
            entries = self._entries.setdefault(session, deque(maxlen=self.limit))
            if activity and (not entries or entries[0] != activity):
                entries.appendleft(activity)
            return list(entries)

    def get(self, session: str) -> list[str]:
        with self._lock:
            return list(self._entries.get(session, ()))

    def forget(self, session: str) -> None:
        with self._lock:
            self._entries.pop(session, None)
