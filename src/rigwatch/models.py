"""Typed records shared by the parsers, fetchers and aggregator."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from .util import to_int

IssueStatus = Literal["open", "hooked", "in_progress", "blocked", "closed"]
IssueType = Literal["task", "feature", "bug", "molecule", "agent"]
AgentState = Literal["spawning", "active", "idle", "done", "error"]
RoleType = Literal["polecat", "witness", "refinery"]
RigState = Literal["active", "inactive", "archived"]
ConvoyStatus = Literal["active", "stalled", "completed"]
WitnessStatus = Literal["active", "idle", "error", "stopped"]
RefineryStatus = Literal["idle", "processing", "error"]

AGENT_STATES: tuple[str, ...] = ("spawning", "active", "idle", "done", "error")
ROLE_TYPES: tuple[str, ...] = ("polecat", "witness", "refinery")
RIG_STATES: tuple[str, ...] = ("active", "inactive", "archived")

RIG_LABEL = "gt:rig"


@dataclass(frozen=True)
class Dependency:
    issue_id: str
    depends_on_id: str
    type: str = "blocks"

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Dependency | None:
        issue_id = raw.get("issue_id")
        depends_on = raw.get("depends_on_id")
        if not isinstance(issue_id, str) or not isinstance(depends_on, str):
            return None
        return cls(issue_id, depends_on, str(raw.get("type") or "blocks"))


@dataclass(frozen=True)
class Issue:
    id: str
    title: str
    description: str = ""
    status: IssueStatus = "open"
    priority: int = 2
    issue_type: IssueType = "task"
    created_at: str = ""
    updated_at: str = ""
    created_by: str | None = None
    assignee: str | None = None
    labels: tuple[str, ...] = ()
    dependencies: tuple[Dependency, ...] = ()
    hook_bead: str | None = None
    role_bead: str | None = None
    rig: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Issue | None:
        """Build an Issue from a log record; records without an id are dropped."""
        issue_id = raw.get("id")
        if not isinstance(issue_id, str) or not issue_id:
            return None
        labels = raw.get("labels")
        if not isinstance(labels, list):
            labels = []
        raw_deps = raw.get("dependencies")
        if not isinstance(raw_deps, list):
            raw_deps = []
        deps: list[Dependency] = []
        for item in raw_deps:
            if isinstance(item, dict):
                dep = Dependency.from_dict(item)
                if dep is not None:
                    deps.append(dep)
        priority = to_int(raw.get("priority"))
        return cls(
            id=issue_id,
            title=str(raw.get("title") or ""),
            description=str(raw.get("description") or ""),
            status=str(raw.get("status") or "open"),
            priority=priority if priority is not None else 2,
            issue_type=str(raw.get("issue_type") or raw.get("type") or "task"),
            created_at=str(raw.get("created_at") or ""),
            updated_at=str(raw.get("updated_at") or ""),
            created_by=raw.get("created_by"),
            assignee=raw.get("assignee") or None,
            labels=tuple(str(label) for label in labels if isinstance(label, str)),
            dependencies=tuple(deps),
            hook_bead=raw.get("hook_bead") or None,
            role_bead=raw.get("role_bead") or None,
            rig=raw.get("_rig") or None,
        )

    def has_label(self, label: str) -> bool:
        return label in self.labels

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["labels"] = list(self.labels)
        out["dependencies"] = [asdict(dep) for dep in self.dependencies]
        out["_rig"] = out.pop("rig")
        return out


@dataclass(frozen=True)
class Agent:
    id: str
    title: str
    role_type: RoleType
    rig: str
    agent_state: AgentState
    hook_bead: str | None
    role_bead: str | None
    cleanup_status: str | None = None
    active_mr: str | None = None
    notification_level: str | None = None
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class Rig:
    id: str
    name: str
    repo: str
    prefix: str
    state: RigState = "active"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Polecat:
    id: str
    name: str
    rig: str
    status: AgentState
    hooked_work: str | None = None
    session: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Witness:
    id: str
    rig: str
    status: WitnessStatus
    last_check: str | None = None
    unread_mail: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PullRequest:
    number: int
    title: str
    branch: str
    author: str
    created_at: str
    url: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Refinery:
    id: str
    name: str
    rig: str
    status: RefineryStatus
    agent_state: str = "idle"
    queue_depth: int = 0
    current_pr: PullRequest | None = None
    pending_prs: tuple[PullRequest, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "rig": self.rig,
            "status": self.status,
            "agent_state": self.agent_state,
            "queue_depth": self.queue_depth,
            "current_pr": self.current_pr.to_dict() if self.current_pr else None,
            "pending_prs": [pr.to_dict() for pr in self.pending_prs],
        }


@dataclass(frozen=True)
class Progress:
    completed: int
    total: int


@dataclass(frozen=True)
class Convoy:
    id: str
    title: str
    issues: tuple[str, ...]
    status: ConvoyStatus
    progress: Progress
    assignee: str | None = None
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "issues": list(self.issues),
            "status": self.status,
            "progress": asdict(self.progress),
            "assignee": self.assignee,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class SourceOutcome:
    """Result of one source fetch; failures carry a degraded value."""

    name: str
    ok: bool
    value: Any
    error: str | None = None
    elapsed: float = 0.0
    fallback: bool = False

    def health(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "error": self.error,
            "elapsed_ms": int(self.elapsed * 1000),
            "fallback": self.fallback,
        }


@dataclass(frozen=True)
class Snapshot:
    issues: tuple[Issue, ...]
    rigs: tuple[Rig, ...]
    polecats: tuple[Polecat, ...]
    witnesses: tuple[Witness, ...]
    refineries: tuple[Refinery, ...]
    convoys: tuple[Convoy, ...]
    timestamp: str
    sources: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "issues": [issue.to_dict() for issue in self.issues],
            "rigs": [rig.to_dict() for rig in self.rigs],
            "polecats": [polecat.to_dict() for polecat in self.polecats],
            "witnesses": [witness.to_dict() for witness in self.witnesses],
            "refineries": [refinery.to_dict() for refinery in self.refineries],
            "convoys": [convoy.to_dict() for convoy in self.convoys],
            "timestamp": self.timestamp,
            "sources": self.sources,
        }


@dataclass(frozen=True)
class AggregationFailure:
    source: str
    detail: str
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": f"Failed to fetch {self.source}",
            "source": self.source,
            "detail": self.detail,
            "issues": [],
            "rigs": [],
            "polecats": [],
            "witnesses": [],
            "refineries": [],
            "convoys": [],
            "timestamp": self.timestamp,
        }
