"""Derive convoys (work streams) from the issue dependency graph."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable, Sequence

from .models import Convoy, Issue, Polecat, Progress
from .util import parse_iso

STALL_THRESHOLD = timedelta(minutes=30)
ROOT_TYPES = ("feature", "molecule")
ACTIVE_STATUSES = ("hooked", "in_progress")

_STATUS_ORDER = {"stalled": 0, "active": 1, "completed": 2}


def dependents_map(issues: Iterable[Issue]) -> dict[str, list[str]]:
    """Map each ``depends_on_id`` to the ids of issues that depend on it."""
    out: dict[str, list[str]] = {}
    for issue in issues:
        for dep in issue.dependencies:
            out.setdefault(dep.depends_on_id, []).append(dep.issue_id)
    return out


def convoy_status(
    members: Sequence[Issue],
    root: Issue,
    *,
    now: datetime,
    stall_after: timedelta = STALL_THRESHOLD,
) -> str:
    completed = sum(1 for issue in members if issue.status == "closed")
    total = len(members)
    if total > 0 and completed == total:
        return "completed"
    if any(issue.status in ACTIVE_STATUSES for issue in members):
        return "active"
    updated = parse_iso(root.updated_at)
    if updated is not None and updated < now - stall_after:
        return "stalled"
    return "active"


def _assignee(members: Sequence[Issue], polecats: Sequence[Polecat]) -> str | None:
    hooked = next((issue for issue in members if issue.status == "hooked"), None)
    if hooked is None:
        return None
    for polecat in polecats:
        if polecat.hooked_work == hooked.id:
            return polecat.name
    return hooked.assignee


def sort_convoys(convoys: Iterable[Convoy]) -> list[Convoy]:
    # sorted() is stable, so input order breaks ties inside a status group.
    return sorted(convoys, key=lambda convoy: _STATUS_ORDER.get(convoy.status, 1))


def derive_convoys(
    issues: Sequence[Issue],
    polecats: Sequence[Polecat] = (),
    *,
    now: datetime | None = None,
    stall_after: timedelta = STALL_THRESHOLD,
) -> list[Convoy]:
    """Group each feature/molecule root with its direct dependents.

    Membership is one hop only: dependents of dependents are not pulled in.
    """
    now = now or datetime.now(timezone.utc)
    deps = dependents_map(issues)
    by_id = {issue.id: issue for issue in issues}

    convoys: list[Convoy] = []
    for root in issues:
        if root.issue_type not in ROOT_TYPES or root.id not in deps:
            continue
        member_ids: dict[str, None] = {root.id: None}
        for dep_id in deps[root.id]:
            member_ids.setdefault(dep_id, None)
        members = [by_id[mid] for mid in member_ids if mid in by_id]

        completed = sum(1 for issue in members if issue.status == "closed")
        convoys.append(
            Convoy(
                id=root.id,
                title=root.title,
                issues=tuple(member_ids),
                status=convoy_status(members, root, now=now, stall_after=stall_after),
                progress=Progress(completed=completed, total=len(members)),
                assignee=_assignee(members, polecats),
                created_at=root.created_at,
                updated_at=root.updated_at,
            )
        )

    return sort_convoys(convoys)
