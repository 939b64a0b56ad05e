"""Decoder for the ``key: value`` blocks embedded in issue descriptions.

Agent and rig issues carry their structured state as plain text lines::

    role_type: polecat
    rig: gastown
    agent_state: idle
    hook_bead: null

Everything that reads those lines goes through :class:`FieldBlock`, so the
vocabulary and the ``null`` handling live in one place.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field as dc_field
from types import MappingProxyType
from typing import Mapping

from .models import (
    AGENT_STATES,
    RIG_LABEL,
    RIG_STATES,
    ROLE_TYPES,
    Agent,
    Issue,
    Refinery,
    Rig,
    Witness,
)
from .util import to_int

_LINE_RE = re.compile(r"^[ \t]*([A-Za-z_][A-Za-z0-9_]*):[ \t]*(.*?)[ \t]*$", re.MULTILINE)

AGENT_FIELDS = frozenset(
    {
        "role_type",
        "rig",
        "agent_state",
        "hook_bead",
        "role_bead",
        "cleanup_status",
        "active_mr",
        "notification_level",
    }
)
WITNESS_FIELDS = frozenset({"witness_status", "unread_mail", "last_check"})
RIG_FIELDS = frozenset({"repo", "prefix", "state"})
KNOWN_FIELDS = AGENT_FIELDS | WITNESS_FIELDS | RIG_FIELDS


def _normalize(raw: str) -> str | None:
    value = raw.strip()
    if not value or value == "null":
        return None
    return value


@dataclass(frozen=True)
class FieldBlock:
    values: Mapping[str, str | None] = dc_field(default_factory=dict)
    unknown: tuple[str, ...] = ()

    @classmethod
    def decode(cls, blob: str | None) -> FieldBlock:
        values: dict[str, str | None] = {}
        unknown: list[str] = []
        for match in _LINE_RE.finditer(blob or ""):
            key = match.group(1)
            if key in values:
                continue
            values[key] = _normalize(match.group(2))
            if key not in KNOWN_FIELDS:
                unknown.append(key)
        return cls(MappingProxyType(values), tuple(unknown))

    def get(self, name: str) -> str | None:
        return self.values.get(name)

    def get_int(self, name: str) -> int | None:
        return to_int(self.get(name))

    def choice(self, name: str, allowed: tuple[str, ...]) -> str | None:
        value = self.get(name)
        return value if value in allowed else None


def field(blob: str | None, name: str) -> str | None:
    """Return the trimmed value of the first ``name: value`` line, or None."""
    return FieldBlock.decode(blob).get(name)


def parse_agent(issue: Issue) -> Agent | None:
    if issue.issue_type != "agent":
        return None
    block = FieldBlock.decode(issue.description)
    role = block.choice("role_type", ROLE_TYPES)
    if role is None:
        return None
    return Agent(
        id=issue.id,
        title=issue.title,
        role_type=role,
        rig=block.get("rig") or issue.rig or "",
        agent_state=block.choice("agent_state", AGENT_STATES) or "idle",
        hook_bead=issue.hook_bead or block.get("hook_bead"),
        role_bead=issue.role_bead or block.get("role_bead"),
        cleanup_status=block.get("cleanup_status"),
        active_mr=block.get("active_mr"),
        notification_level=block.get("notification_level"),
        created_at=issue.created_at,
        updated_at=issue.updated_at,
    )


def parse_rig(issue: Issue) -> Rig | None:
    if not issue.has_label(RIG_LABEL):
        return None
    block = FieldBlock.decode(issue.description)
    return Rig(
        id=issue.id,
        name=issue.title,
        repo=block.get("repo") or "",
        prefix=block.get("prefix") or "",
        state=block.choice("state", RIG_STATES) or "active",
    )


def _witness_status(raw: str | None) -> str:
    if raw == "active":
        return "active"
    if raw == "error":
        return "error"
    if raw in ("stopped", "done"):
        return "stopped"
    return "idle"


def parse_witness(issue: Issue) -> Witness | None:
    agent = parse_agent(issue)
    if agent is None or agent.role_type != "witness":
        return None
    block = FieldBlock.decode(issue.description)
    return Witness(
        id=agent.id,
        rig=agent.rig,
        status=_witness_status(block.get("witness_status") or agent.agent_state),
        last_check=block.get("last_check") or agent.updated_at or None,
        unread_mail=block.get_int("unread_mail") or 0,
    )


def refinery_status(agent_state: str | None) -> str:
    if agent_state == "active":
        return "processing"
    if agent_state == "error":
        return "error"
    return "idle"


def parse_refinery(issue: Issue) -> Refinery | None:
    agent = parse_agent(issue)
    if agent is None or agent.role_type != "refinery":
        return None
    return Refinery(
        id=agent.id,
        name=agent.title,
        rig=agent.rig,
        status=refinery_status(agent.agent_state),
        agent_state=agent.agent_state,
    )
