"""Accessors for the work-item log and the live town status.

Every fetch is wrapped by :func:`guarded`, which turns timeouts and errors
into a failed :class:`~rigwatch.models.SourceOutcome` carrying a degraded
value. Callers decide what a failure means; only the log read is mandatory.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Sequence

import structlog

from .cache import SingleFlight, TTLCache
from .exec import CommandRunner
from .fields import refinery_status
from .jsonl import parse_records
from .models import (
    AGENT_STATES,
    Convoy,
    Issue,
    Polecat,
    Progress,
    PullRequest,
    Refinery,
    Rig,
    RIG_STATES,
    SourceOutcome,
    Witness,
)
from .util import to_int

logger = structlog.get_logger()

STATUS_KEY = "gt-status"
PR_LIMIT = 20


class LogReadError(RuntimeError):
    pass


async def guarded(
    name: str,
    fn: Callable[[], Awaitable[Any]],
    *,
    timeout: float,
    default: Any,
) -> SourceOutcome:
    """Run one fetch under its own timeout; never raises."""
    start = time.monotonic()
    try:
        value = await asyncio.wait_for(fn(), timeout)
    except asyncio.TimeoutError:
        error = f"timed out after {timeout:g}s"
    except Exception as exc:
        error = str(exc) or exc.__class__.__name__
    else:
        return SourceOutcome(name, True, value, elapsed=time.monotonic() - start)
    elapsed = time.monotonic() - start
    logger.warning("Source fetch degraded", source=name, error=error, elapsed=round(elapsed, 3))
    return SourceOutcome(name, False, default, error=error, elapsed=elapsed)


# ---------------------------------------------------------------------------
# Work-item log
# ---------------------------------------------------------------------------


def resolve_beads_path(beads_path: Path, *, max_hops: int = 8) -> Path:
    """Follow ``redirect`` files pointing at another beads directory."""
    current = beads_path
    for _ in range(max_hops):
        redirect = current / "redirect"
        if not redirect.is_file():
            return current
        target = redirect.read_text(encoding="utf-8").strip()
        if not target:
            return current
        current = (current / target).resolve()
    return current


class IssueLogReader:
    def __init__(
        self,
        runner: CommandRunner,
        rig_paths: Mapping[str, Path],
        *,
        timeout: float = 10.0,
    ) -> None:
        self.runner = runner
        self.rig_paths = dict(rig_paths)
        self.timeout = timeout

    async def _read_rig(self, rig: str, beads_path: Path) -> list[dict]:
        resolved = resolve_beads_path(beads_path)
        try:
            content = await self.runner.run(
                ["bd", "list", "--json"], timeout=self.timeout, cwd=resolved
            )
        except Exception as exc:
            logger.warning(
                "bd list failed, reading issues.jsonl",
                rig=rig,
                path=str(resolved),
                error=str(exc) or exc.__class__.__name__,
            )
            fallback = resolved / "issues.jsonl"
            try:
                content = await asyncio.to_thread(fallback.read_text, encoding="utf-8")
            except OSError as read_exc:
                raise LogReadError(f"{rig}: cannot read {fallback}: {read_exc}") from read_exc
        return parse_records(content)

    async def read(self) -> list[Issue]:
        if not self.rig_paths:
            raise LogReadError("no beads directories configured")
        multi_rig = len(self.rig_paths) > 1
        names = list(self.rig_paths)
        results = await asyncio.gather(
            *(self._read_rig(name, self.rig_paths[name]) for name in names),
            return_exceptions=True,
        )

        issues: list[Issue] = []
        errors: list[str] = []
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.warning("Rig log unreadable", rig=name, error=str(result))
                errors.append(str(result))
                continue
            for row in result:
                if multi_rig:
                    row = {**row, "_rig": name}
                try:
                    issue = Issue.from_dict(row)
                except (TypeError, ValueError) as exc:
                    logger.warning("Skipping malformed issue", rig=name, id=row.get("id"), error=str(exc))
                    continue
                if issue is not None:
                    issues.append(issue)

        if len(errors) == len(names):
            raise LogReadError("; ".join(errors))
        return issues

    async def fetch(self) -> SourceOutcome:
        # The runner already bounds each bd call; the outer timeout also
        # covers the file fallback.
        return await guarded("issues", self.read, timeout=self.timeout * 2, default=[])


# ---------------------------------------------------------------------------
# Live status (gt status --json)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LiveAgent:
    name: str
    role: str
    rig: str = ""
    address: str = ""
    session: str | None = None
    running: bool = False
    has_work: bool = False
    state: str | None = None
    unread_mail: int = 0
    hook_bead: str | None = None


def _live_agent(raw: Mapping[str, Any], rig: str) -> LiveAgent | None:
    name = raw.get("name")
    if not isinstance(name, str) or not name:
        return None
    hook = raw.get("hook_bead") or raw.get("hooked_work")
    return LiveAgent(
        name=name,
        role=str(raw.get("role") or "unknown"),
        rig=rig,
        address=str(raw.get("address") or (f"{rig}/{name}" if rig else name)),
        session=raw.get("session") or None,
        running=bool(raw.get("running")),
        has_work=bool(raw.get("has_work")),
        state=raw.get("state") or None,
        unread_mail=to_int(raw.get("unread_mail")) or 0,
        hook_bead=hook if isinstance(hook, str) and hook != "null" else None,
    )


def parse_live_agents(status: Mapping[str, Any] | None) -> list[LiveAgent]:
    if not status:
        return []
    agents: list[LiveAgent] = []
    for raw in status.get("agents") or []:
        if isinstance(raw, dict):
            agent = _live_agent(raw, "")
            if agent is not None:
                agents.append(agent)
    for rig in status.get("rigs") or []:
        if not isinstance(rig, dict):
            continue
        rig_name = str(rig.get("name") or "")
        rig_agents = rig.get("agents")
        if rig_agents:
            for raw in rig_agents:
                if isinstance(raw, dict):
                    agent = _live_agent(raw, rig_name)
                    if agent is not None:
                        agents.append(agent)
            continue
        for name in rig.get("polecats") or []:
            if isinstance(name, str) and name:
                agents.append(
                    LiveAgent(
                        name=name,
                        role="polecat",
                        rig=rig_name,
                        address=f"{rig_name}/{name}",
                        running=True,
                    )
                )
    return agents


def _polecat_status(agent: LiveAgent) -> str:
    if agent.state in AGENT_STATES:
        return agent.state  # type: ignore[return-value]
    if agent.running and agent.has_work:
        return "active"
    if agent.running:
        return "idle"
    return "done"


def live_polecats(agents: Sequence[LiveAgent]) -> list[Polecat]:
    return [
        Polecat(
            id=agent.address,
            name=agent.name,
            rig=agent.rig,
            status=_polecat_status(agent),
            hooked_work=agent.hook_bead,
            session=agent.session,
        )
        for agent in agents
        if agent.role == "polecat"
    ]


def live_witnesses(agents: Sequence[LiveAgent]) -> list[Witness]:
    out: list[Witness] = []
    for agent in agents:
        if agent.role != "witness":
            continue
        if agent.state == "error":
            status = "error"
        elif not agent.running:
            status = "stopped"
        else:
            status = "active" if agent.has_work else "idle"
        out.append(
            Witness(
                id=agent.address,
                rig=agent.rig,
                status=status,
                last_check=None,
                unread_mail=agent.unread_mail,
            )
        )
    return out


def live_refineries(agents: Sequence[LiveAgent]) -> list[Refinery]:
    out: list[Refinery] = []
    for agent in agents:
        if agent.role != "refinery":
            continue
        if agent.state == "error":
            state = "error"
        elif agent.running and agent.has_work:
            state = "active"
        elif agent.running:
            state = "idle"
        else:
            state = "done"
        out.append(
            Refinery(
                id=agent.address,
                name=agent.name,
                rig=agent.rig,
                status=refinery_status(state),
                agent_state=state,
            )
        )
    return out


class LiveStatusFetcher:
    """``gt status --json`` behind a short TTL cache and a single-flight guard."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        ttl_seconds: float = 5.0,
        timeout: float = 15.0,
        cache: TTLCache[dict[str, Any]] | None = None,
        flight: SingleFlight | None = None,
    ) -> None:
        self.runner = runner
        self.timeout = timeout
        self.cache = cache or TTLCache(ttl_seconds)
        self.flight = flight or SingleFlight()

    async def _call(self) -> dict[str, Any]:
        out = await self.runner.run(["gt", "status", "--json"], timeout=self.timeout)
        data = json.loads(out.strip() or "{}")
        if isinstance(data, list):
            data = {"agents": data}
        if not isinstance(data, dict):
            raise ValueError("gt status returned a non-object payload")
        self.cache.set(data)
        return data

    async def _fetch_uncached(self) -> SourceOutcome:
        return await guarded("status", self._call, timeout=self.timeout, default={})

    async def fetch(self) -> SourceOutcome:
        cached = self.cache.get()
        if cached is not None:
            return SourceOutcome("status", True, cached)
        return await self.flight.do(STATUS_KEY, self._fetch_uncached)


# ---------------------------------------------------------------------------
# Convoys (gt convoy list / gt convoy status)
# ---------------------------------------------------------------------------


def _convoy_from_detail(convoy_id: str, title: str, detail: Mapping[str, Any]) -> Convoy:
    tracked = [item for item in detail.get("tracked") or [] if isinstance(item, dict)]
    issue_ids = tuple(str(item["id"]) for item in tracked if item.get("id"))
    completed = to_int(detail.get("completed"))
    if completed is None:
        completed = sum(1 for item in tracked if item.get("status") == "closed")
    total = to_int(detail.get("total"))
    if total is None:
        total = len(issue_ids)

    raw_status = str(detail.get("status") or "")
    if raw_status in ("completed", "closed", "landed") or (total > 0 and completed == total):
        status = "completed"
    elif raw_status == "stalled":
        status = "stalled"
    else:
        status = "active"

    return Convoy(
        id=convoy_id,
        title=str(detail.get("title") or title),
        issues=issue_ids,
        status=status,
        progress=Progress(completed=completed, total=total),
        assignee=detail.get("assignee") or None,
        created_at=str(detail.get("created_at") or ""),
        updated_at=str(detail.get("updated_at") or ""),
    )


class ConvoyFetcher:
    def __init__(self, runner: CommandRunner, *, timeout: float = 5.0) -> None:
        self.runner = runner
        self.timeout = timeout

    async def _list(self) -> list[dict[str, Any]]:
        out = await self.runner.run(["gt", "convoy", "list", "--json"], timeout=self.timeout)
        payload = json.loads(out.strip() or "[]")
        if isinstance(payload, dict):
            payload = payload.get("convoys") or []
        return [row for row in payload if isinstance(row, dict) and row.get("id")]

    async def _detail(self, convoy_id: str) -> dict[str, Any]:
        out = await self.runner.run(
            ["gt", "convoy", "status", convoy_id, "--json"], timeout=self.timeout
        )
        payload = json.loads(out.strip() or "{}")
        if not isinstance(payload, dict):
            raise ValueError(f"convoy {convoy_id}: unexpected payload")
        return payload

    async def fetch(self, previous: Mapping[str, Convoy] | None = None) -> SourceOutcome:
        previous = previous or {}
        listed = await guarded("convoys", self._list, timeout=self.timeout, default=[])
        if not listed.ok:
            return listed

        entries = listed.value
        details = await asyncio.gather(
            *(
                guarded(
                    f"convoy:{entry['id']}",
                    lambda cid=str(entry["id"]): self._detail(cid),
                    timeout=self.timeout,
                    default=None,
                )
                for entry in entries
            )
        )

        convoys: list[Convoy] = []
        used_fallback = False
        for entry, detail in zip(entries, details):
            convoy_id = str(entry["id"])
            title = str(entry.get("title") or convoy_id)
            if detail.ok and detail.value is not None:
                convoys.append(_convoy_from_detail(convoy_id, title, detail.value))
                continue
            used_fallback = True
            prior = previous.get(convoy_id)
            if prior is not None:
                convoys.append(replace(prior, title=title))
            else:
                convoys.append(
                    Convoy(
                        id=convoy_id,
                        title=title,
                        issues=(),
                        status="active",
                        progress=Progress(completed=0, total=0),
                    )
                )

        return SourceOutcome(
            "convoys",
            True,
            convoys,
            elapsed=listed.elapsed + max((d.elapsed for d in details), default=0.0),
            fallback=used_fallback,
        )


# ---------------------------------------------------------------------------
# Refinery merge queues (gh pr list per rig)
# ---------------------------------------------------------------------------


def _pull_request(raw: Mapping[str, Any]) -> PullRequest | None:
    number = to_int(raw.get("number"))
    if number is None:
        return None
    author = raw.get("author")
    return PullRequest(
        number=number,
        title=str(raw.get("title") or ""),
        branch=str(raw.get("headRefName") or ""),
        author=str(author.get("login") or "") if isinstance(author, dict) else str(author or ""),
        created_at=str(raw.get("createdAt") or ""),
        url=str(raw.get("url") or ""),
    )


class RefineryQueueFetcher:
    def __init__(
        self,
        runner: CommandRunner,
        gt_root: Path | None,
        *,
        timeout: float = 5.0,
    ) -> None:
        self.runner = runner
        self.gt_root = gt_root
        self.timeout = timeout

    async def _queue(self, gt_root: Path, rig: str) -> list[PullRequest]:
        out = await self.runner.run(
            [
                "gh",
                "pr",
                "list",
                "--json",
                "number,title,headRefName,author,createdAt,url",
                "--limit",
                str(PR_LIMIT),
            ],
            timeout=self.timeout,
            cwd=gt_root / rig,
        )
        payload = json.loads(out.strip() or "[]")
        if not isinstance(payload, list):
            raise ValueError(f"{rig}: unexpected gh pr list payload")
        prs = [_pull_request(row) for row in payload if isinstance(row, dict)]
        return [pr for pr in prs if pr is not None]

    async def fetch(self, rigs: Sequence[str]) -> SourceOutcome:
        gt_root = self.gt_root
        if gt_root is None or not rigs:
            return SourceOutcome("refinery_queues", True, {})
        outcomes = await asyncio.gather(
            *(
                guarded(
                    f"refinery_queue:{rig}",
                    lambda rig=rig: self._queue(gt_root, rig),
                    timeout=self.timeout,
                    default=[],
                )
                for rig in rigs
            )
        )
        failed = [outcome.error for outcome in outcomes if not outcome.ok]
        return SourceOutcome(
            "refinery_queues",
            not failed,
            {rig: outcome.value for rig, outcome in zip(rigs, outcomes)},
            error="; ".join(e for e in failed if e) or None,
            elapsed=max((o.elapsed for o in outcomes), default=0.0),
        )


# ---------------------------------------------------------------------------
# Rig registry (mayor/rigs.json)
# ---------------------------------------------------------------------------


def parse_registry(payload: Mapping[str, Any]) -> list[Rig]:
    rigs_raw = payload.get("rigs")
    if not isinstance(rigs_raw, dict):
        raise ValueError("rigs registry has no 'rigs' table")
    rigs: list[Rig] = []
    for name, cfg in rigs_raw.items():
        if not isinstance(cfg, dict):
            continue
        beads = cfg.get("beads") if isinstance(cfg.get("beads"), dict) else {}
        state = cfg.get("state")
        rigs.append(
            Rig(
                id=str(name),
                name=str(name),
                repo=str(cfg.get("git_url") or beads.get("repo") or ""),
                prefix=str(beads.get("prefix") or ""),
                state=state if state in RIG_STATES else "active",
            )
        )
    return rigs


class RigRegistryReader:
    def __init__(self, path: Path | None, *, timeout: float = 5.0) -> None:
        self.path = path
        self.timeout = timeout

    async def read(self) -> list[Rig]:
        if self.path is None:
            raise LogReadError("GT_BASE_PATH not configured")
        text = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        payload = json.loads(text)
        if not isinstance(payload, dict):
            raise ValueError("rigs registry must be a JSON object")
        return parse_registry(payload)

    async def fetch(self) -> SourceOutcome:
        return await guarded("registry", self.read, timeout=self.timeout, default=[])
