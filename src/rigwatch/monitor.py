"""Snapshot aggregation and per-agent activity collection."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Sequence

import structlog

from .activity import ActivityHistory, reduce_activity
from .cache import SingleFlight, TTLCache
from .config import MonitorConfig
from .convoys import derive_convoys, sort_convoys
from .exec import CAPTURE_TIMEOUT, CommandRunner, TmuxCapture
from .fields import parse_agent, parse_refinery, parse_rig, parse_witness
from .models import (
    RIG_LABEL,
    AggregationFailure,
    Convoy,
    Issue,
    Polecat,
    PullRequest,
    Refinery,
    Rig,
    Snapshot,
    SourceOutcome,
)
from .sources import (
    ConvoyFetcher,
    IssueLogReader,
    LiveAgent,
    LiveStatusFetcher,
    RefineryQueueFetcher,
    RigRegistryReader,
    live_polecats,
    live_refineries,
    live_witnesses,
    parse_live_agents,
)
from .util import utc_now_iso

logger = structlog.get_logger()

SNAPSHOT_KEY = "snapshot"
ACTIVITY_LIMIT = 3


def log_polecats(issues: Sequence[Issue]) -> list[Polecat]:
    out: list[Polecat] = []
    for issue in issues:
        agent = parse_agent(issue)
        if agent is None or agent.role_type != "polecat":
            continue
        out.append(
            Polecat(
                id=agent.id,
                name=agent.title or agent.id,
                rig=agent.rig,
                status=agent.agent_state,
                hooked_work=agent.hook_bead,
            )
        )
    return out


def _with_queue(refinery: Refinery, prs: Sequence[PullRequest]) -> Refinery:
    return replace(
        refinery,
        queue_depth=len(prs),
        current_pr=prs[0] if prs else None,
        pending_prs=tuple(prs[1:]),
    )


def merge_queues(
    refineries: Sequence[Refinery],
    queues: Mapping[str, Sequence[PullRequest]],
) -> list[Refinery]:
    """Attach each rig's PR queue to its refinery, adding idle ones where missing."""
    out: list[Refinery] = []
    covered: set[str] = set()
    for refinery in refineries:
        prs = queues.get(refinery.rig)
        if prs is None:
            out.append(refinery)
            continue
        covered.add(refinery.rig)
        out.append(_with_queue(refinery, prs))
    for rig, prs in queues.items():
        if rig in covered:
            continue
        synthetic = Refinery(
            id=f"refinery-{rig}",
            name=f"refinery-{rig}",
            rig=rig,
            status="idle",
        )
        out.append(_with_queue(synthetic, prs))
    return out


def merge_convoys(derived: Sequence[Convoy], fetched: Sequence[Convoy]) -> list[Convoy]:
    known = {convoy.id for convoy in derived}
    extra = [convoy for convoy in fetched if convoy.id not in known]
    return sort_convoys([*derived, *extra])


def visible_issues(issues: Sequence[Issue]) -> list[Issue]:
    return [
        issue
        for issue in issues
        if issue.issue_type != "agent" and not issue.has_label(RIG_LABEL)
    ]


class Aggregator:
    """Builds the merged town snapshot and caches it for ``snapshot_ttl`` seconds.

    Sources are fetched concurrently and each is bounded by its own timeout.
    Only the work-item log is mandatory; everything else degrades to an
    empty collection and shows up as unhealthy in ``Snapshot.sources``.
    """

    def __init__(
        self,
        config: MonitorConfig,
        runner: CommandRunner,
        *,
        cache: TTLCache[Snapshot] | None = None,
        flight: SingleFlight | None = None,
        status: LiveStatusFetcher | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        self.cache = cache or TTLCache(config.snapshot_ttl)
        self.flight = flight or SingleFlight()
        self.status = status or LiveStatusFetcher(
            runner,
            ttl_seconds=config.status_ttl,
            timeout=config.status_timeout,
        )
        self.issue_reader = IssueLogReader(
            runner, config.rig_paths(), timeout=config.log_timeout
        )
        self.registry = RigRegistryReader(config.registry_path(), timeout=config.fetch_timeout)
        self.convoy_fetcher = ConvoyFetcher(runner, timeout=config.fetch_timeout)
        self.queue_fetcher = RefineryQueueFetcher(
            runner, config.gt_root, timeout=config.fetch_timeout
        )
        self.stall_after = timedelta(minutes=config.stall_minutes)
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._previous_convoys: dict[str, Convoy] = {}
        self.last_snapshot: Snapshot | None = None

    async def snapshot(self) -> Snapshot | AggregationFailure:
        cached = self.cache.get()
        if cached is not None:
            logger.debug("Snapshot cache hit", age=round(self.cache.age() or 0.0, 3))
            return cached
        return await self.flight.do(SNAPSHOT_KEY, self._build)

    async def _rigs_and_queues(self) -> tuple[SourceOutcome, SourceOutcome]:
        registry = await self.registry.fetch()
        names = [rig.name for rig in registry.value] if registry.ok else []
        queues = await self.queue_fetcher.fetch(names or list(self.config.rigs))
        return registry, queues

    async def _build(self) -> Snapshot | AggregationFailure:
        issues_out, status_out, (registry_out, queues_out), convoys_out = await asyncio.gather(
            self.issue_reader.fetch(),
            self.status.fetch(),
            self._rigs_and_queues(),
            self.convoy_fetcher.fetch(self._previous_convoys),
        )

        if not issues_out.ok:
            logger.error("Issue log read failed", source="issues", error=issues_out.error)
            return AggregationFailure(
                source="issues",
                detail=issues_out.error or "unknown error",
                timestamp=utc_now_iso(),
            )

        issues: list[Issue] = issues_out.value
        live = parse_live_agents(status_out.value if status_out.ok else None)

        polecats = live_polecats(live) or log_polecats(issues)
        witnesses = live_witnesses(live) or [
            w for w in (parse_witness(issue) for issue in issues) if w is not None
        ]
        refineries = live_refineries(live) or [
            r for r in (parse_refinery(issue) for issue in issues) if r is not None
        ]
        refineries = merge_queues(refineries, queues_out.value)

        rigs: list[Rig] = list(registry_out.value) if registry_out.ok else []
        if not rigs:
            rigs = [rig for rig in (parse_rig(issue) for issue in issues) if rig is not None]

        derived = derive_convoys(
            issues, polecats, now=self._now(), stall_after=self.stall_after
        )
        convoys = merge_convoys(derived, convoys_out.value)

        sources = {
            outcome.name: outcome.health()
            for outcome in (issues_out, status_out, registry_out, queues_out, convoys_out)
        }
        snapshot = Snapshot(
            issues=tuple(visible_issues(issues)),
            rigs=tuple(rigs),
            polecats=tuple(polecats),
            witnesses=tuple(witnesses),
            refineries=tuple(refineries),
            convoys=tuple(convoys),
            timestamp=utc_now_iso(),
            sources=sources,
        )
        self.cache.set(snapshot)
        self._previous_convoys = {convoy.id: convoy for convoy in convoys}
        self.last_snapshot = snapshot
        logger.info(
            "Snapshot built",
            issues=len(snapshot.issues),
            convoys=len(snapshot.convoys),
            degraded=[name for name, health in sources.items() if not health["ok"]],
        )
        return snapshot


class ActivityMonitor:
    """Captures each running agent's tmux pane and reduces it to an activity line."""

    def __init__(
        self,
        status: LiveStatusFetcher,
        capture: TmuxCapture,
        history: ActivityHistory | None = None,
        *,
        timeout: float = CAPTURE_TIMEOUT,
    ) -> None:
        self.status = status
        self.capture = capture
        self.history = history or ActivityHistory()
        self.timeout = timeout

    async def _agent_activity(self, agent: LiveAgent, session: str) -> dict[str, Any] | None:
        try:
            text = await asyncio.wait_for(self.capture.capture(session), self.timeout)
        except Exception as exc:
            logger.debug("Pane capture failed", session=session, error=str(exc))
            return None
        summary = reduce_activity(text)
        rolling = self.history.record(session, summary.activity)
        return {
            "session": session,
            "name": agent.name,
            "role": agent.role,
            "activity": summary.activity,
            "activities": rolling[:ACTIVITY_LIMIT],
            "duration": summary.duration,
            "tool": summary.tool,
        }

    async def collect(self) -> dict[str, Any]:
        if not self.capture.available():
            return {"activities": [], "tmux_available": False}
        outcome = await self.status.fetch()
        if not outcome.ok:
            return {
                "activities": [],
                "tmux_available": True,
                "error": "Could not get gt status",
            }
        agents = [
            agent
            for agent in parse_live_agents(outcome.value)
            if agent.running
        ]
        results = await asyncio.gather(
            *(self._agent_activity(agent, agent.session) for agent in agents if agent.session)
        )
        return {
            "activities": [item for item in results if item is not None],
            "tmux_available": True,
        }


def build_aggregator(config: MonitorConfig, runner: CommandRunner) -> tuple[Aggregator, ActivityMonitor]:
    """Wire an aggregator and activity monitor that share one live-status fetcher."""
    status = LiveStatusFetcher(
        runner,
        ttl_seconds=config.status_ttl,
        timeout=config.status_timeout,
    )
    aggregator = Aggregator(config, runner, status=status)
    activity = ActivityMonitor(status, TmuxCapture(runner))
    return aggregator, activity
