from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Callable, Sequence

import pytest

from rigwatch.util import CommandError


class FakeRunner:
    """Answers commands from a table keyed by argv; unknown commands fail."""

    def __init__(
        self,
        responses: dict[tuple[str, ...], Any] | None = None,
        *,
        delay: float = 0.0,
        slow: dict[tuple[str, ...], float] | None = None,
    ):
        self.responses = dict(responses or {})
        self.delay = delay
        self.slow = dict(slow or {})
        self.calls: list[tuple[str, ...]] = []
        self.cwds: list[Path | None] = []

    async def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float = 10.0,
        cwd: Path | None = None,
    ) -> str:
        key = tuple(argv)
        self.calls.append(key)
        self.cwds.append(cwd)
        if self.delay:
            await asyncio.sleep(self.delay)
        if key in self.slow:
            await asyncio.sleep(self.slow[key])
        response = self.responses.get(key)
        if response is None:
            raise CommandError(list(argv), 1, "", "unknown command")
        if isinstance(response, BaseException):
            raise response
        if not isinstance(response, str):
            return json.dumps(response)
        return response

    def count(self, *prefix: str) -> int:
        return sum(1 for call in self.calls if call[: len(prefix)] == prefix)


def issue_row(
    issue_id: str,
    *,
    title: str | None = None,
    status: str = "open",
    issue_type: str = "task",
    depends_on: Sequence[str] = (),
    updated_at: str = "2026-01-01T00:00:00Z",
    **extra: Any,
) -> dict[str, Any]:
    row: dict[str, Any] = {
        "id": issue_id,
        "title": title or issue_id,
        "status": status,
        "priority": 2,
        "issue_type": issue_type,
        "created_at": "2026-01-01T00:00:00Z",
        "updated_at": updated_at,
        "dependencies": [
            {"issue_id": issue_id, "depends_on_id": target, "type": "blocks"}
            for target in depends_on
        ],
    }
    row.update(extra)
    return row


@pytest.fixture
def fake_runner() -> Callable[..., FakeRunner]:
    return FakeRunner


@pytest.fixture
def make_issue() -> Callable[..., dict[str, Any]]:
    return issue_row
