"""Tolerant JSONL helpers for the work-item log."""

from __future__ import annotations

import json


def parse_jsonl(content: str) -> list[dict]:
    """Parse JSONL text, skipping blank, malformed and non-object lines."""
    rows: list[dict] = []
    for line in content.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            row = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(row, dict):
            rows.append(row)
    return rows


def parse_records(content: str) -> list[dict]:
    """Accept either a JSON array of objects or JSONL."""
    stripped = content.strip()
    if stripped.startswith("["):
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, list):
            return [row for row in payload if isinstance(row, dict)]
    return parse_jsonl(content)

