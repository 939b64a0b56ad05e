from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path

from rigwatch.activity import ActivityHistory
from rigwatch.config import MonitorConfig
from rigwatch.models import AggregationFailure, Snapshot
from rigwatch.monitor import ActivityMonitor, Aggregator
from rigwatch.sources import LiveStatusFetcher
from rigwatch.util import CommandError

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

BD_LIST = ("bd", "list", "--json")
GT_STATUS = ("gt", "status", "--json")
CONVOY_LIST = ("gt", "convoy", "list", "--json")
GH_PR_LIST = (
    "gh",
    "pr",
    "list",
    "--json",
    "number,title,headRefName,author,createdAt,url",
    "--limit",
    "20",
)

STATUS = {
    "name": "town",
    "agents": [
        {"name": "mayor", "address": "mayor/", "session": "hq-mayor", "role": "coordinator", "running": True},
    ],
    "rigs": [
        {
            "name": "gastown",
            "agents": [
                {
                    "name": "nux",
                    "address": "gastown/nux",
                    "session": "gt-gastown-nux",
                    "role": "polecat",
                    "running": True,
                    "has_work": True,
                    "hook_bead": "gt-b",
                },
                {"name": "refinery", "address": "gastown/refinery", "role": "refinery", "running": True},
            ],
        }
    ],
}

PRS = [
    {"number": 41, "title": "Fix login", "headRefName": "polecat/nux", "author": {"login": "nux"}},
    {"number": 42, "title": "Docs", "headRefName": "polecat/slit", "author": {"login": "slit"}},
]


def _config(tmp_path: Path) -> MonitorConfig:
    return MonitorConfig(gt_root=tmp_path, beads_path=tmp_path / ".beads")


def _write_registry(tmp_path: Path, *names: str) -> None:
    path = tmp_path / "mayor" / "rigs.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    rigs = {name: {"git_url": f"git@example.com:town/{name}.git", "beads": {"prefix": name[:2]}} for name in names}
    path.write_text(json.dumps({"version": 1, "rigs": rigs}), encoding="utf-8")


def _log(make_issue) -> list[dict]:
    return [
        make_issue("gt-f", issue_type="feature", updated_at="2025-01-01T00:00:00Z"),
        make_issue("gt-a", status="closed", depends_on=["gt-f"]),
        make_issue("gt-b", status="hooked", depends_on=["gt-f"]),
        make_issue(
            "gt-agent-zed",
            title="zed",
            issue_type="agent",
            description="role_type: polecat\nrig: gastown\nagent_state: idle\nhook_bead: null",
        ),
        make_issue(
            "gt-rig-old",
            title="oldrig",
            labels=["gt:rig"],
            description="repo: old\nprefix: ol",
        ),
    ]


def _runner(fake_runner, make_issue):
    responses = {
        BD_LIST: _log(make_issue),
        GT_STATUS: STATUS,
        CONVOY_LIST: [],
        GH_PR_LIST: PRS,
    }
    return fake_runner(responses)


def _snapshot(aggregator: Aggregator) -> Snapshot:
    result = asyncio.run(aggregator.snapshot())
    assert isinstance(result, Snapshot)
    return result


def test_second_call_inside_ttl_makes_no_external_calls(tmp_path, fake_runner, make_issue) -> None:
    runner = _runner(fake_runner, make_issue)
    aggregator = Aggregator(_config(tmp_path), runner, now=lambda: NOW)

    async def scenario():
        first = await aggregator.snapshot()
        calls = len(runner.calls)
        second = await aggregator.snapshot()
        return first, second, calls

    first, second, calls = asyncio.run(scenario())

    assert isinstance(first, Snapshot)
    assert second is first
    assert calls > 0
    assert len(runner.calls) == calls


def test_concurrent_snapshot_requests_share_one_build(tmp_path, fake_runner, make_issue) -> None:
    runner = _runner(fake_runner, make_issue)
    runner.delay = 0.01
    aggregator = Aggregator(_config(tmp_path), runner, now=lambda: NOW)

    async def scenario():
        return await asyncio.gather(*(aggregator.snapshot() for _ in range(4)))

    results = asyncio.run(scenario())

    assert all(result is results[0] for result in results)
    assert runner.count(*BD_LIST) == 1
    assert runner.count(*GT_STATUS) == 1


def test_failed_log_read_is_a_typed_failure(tmp_path, fake_runner, make_issue) -> None:
    runner = _runner(fake_runner, make_issue)
    del runner.responses[BD_LIST]
    aggregator = Aggregator(_config(tmp_path), runner, now=lambda: NOW)

    result = asyncio.run(aggregator.snapshot())

    assert isinstance(result, AggregationFailure)
    body = result.to_dict()
    assert body["error"] == "Failed to fetch issues"
    assert body["issues"] == [] and body["convoys"] == []
    assert aggregator.cache.get() is None


def test_live_agents_replace_log_agents(tmp_path, fake_runner, make_issue) -> None:
    snapshot = _snapshot(Aggregator(_config(tmp_path), _runner(fake_runner, make_issue), now=lambda: NOW))

    assert [p.name for p in snapshot.polecats] == ["nux"]
    assert snapshot.sources["status"]["ok"] is True


def test_log_agents_used_when_live_status_fails(tmp_path, fake_runner, make_issue) -> None:
    runner = _runner(fake_runner, make_issue)
    runner.responses[GT_STATUS] = CommandError(list(GT_STATUS), 1, "", "daemon down")
    snapshot = _snapshot(Aggregator(_config(tmp_path), runner, now=lambda: NOW))

    assert [(p.id, p.name, p.status) for p in snapshot.polecats] == [("gt-agent-zed", "zed", "idle")]
    assert snapshot.sources["status"]["ok"] is False


def test_slow_live_status_times_out_without_blocking_snapshot(tmp_path, fake_runner, make_issue) -> None:
    runner = _runner(fake_runner, make_issue)
    runner.slow[GT_STATUS] = 5.0
    config = MonitorConfig(gt_root=tmp_path, beads_path=tmp_path / ".beads", status_timeout=0.05)

    snapshot = _snapshot(Aggregator(config, runner, now=lambda: NOW))

    status = snapshot.sources["status"]
    assert status["ok"] is False
    assert "timed out" in status["error"]
    assert snapshot.sources["issues"]["ok"] is True
    assert [(p.id, p.name, p.status) for p in snapshot.polecats] == [("gt-agent-zed", "zed", "idle")]
    assert [c.id for c in snapshot.convoys] == ["gt-f"]
    assert "gt-a" in {issue.id for issue in snapshot.issues}


def test_slow_convoy_detail_uses_placeholder(tmp_path, fake_runner, make_issue) -> None:
    detail_key = ("gt", "convoy", "status", "hq-cv-1", "--json")
    runner = _runner(fake_runner, make_issue)
    runner.responses[CONVOY_LIST] = [{"id": "hq-cv-1", "title": "Ship login"}]
    runner.responses[detail_key] = {"tracked": [{"id": "gt-x", "status": "closed"}]}
    runner.slow[detail_key] = 5.0
    config = MonitorConfig(gt_root=tmp_path, beads_path=tmp_path / ".beads", fetch_timeout=0.05)

    snapshot = _snapshot(Aggregator(config, runner, now=lambda: NOW))

    convoy = next(c for c in snapshot.convoys if c.id == "hq-cv-1")
    assert (convoy.title, convoy.status, convoy.issues) == ("Ship login", "active", ())
    assert (convoy.progress.completed, convoy.progress.total) == (0, 0)
    assert snapshot.sources["convoys"]["fallback"] is True
    assert [p.name for p in snapshot.polecats] == ["nux"]


def test_registry_rigs_replace_issue_rigs(tmp_path, fake_runner, make_issue) -> None:
    without_registry = _snapshot(
        Aggregator(_config(tmp_path), _runner(fake_runner, make_issue), now=lambda: NOW)
    )
    assert [rig.name for rig in without_registry.rigs] == ["oldrig"]
    assert without_registry.sources["registry"]["ok"] is False

    _write_registry(tmp_path, "gastown")
    with_registry = _snapshot(
        Aggregator(_config(tmp_path), _runner(fake_runner, make_issue), now=lambda: NOW)
    )
    assert [rig.name for rig in with_registry.rigs] == ["gastown"]


def test_snapshot_issues_hide_agents_and_rigs(tmp_path, fake_runner, make_issue) -> None:
    snapshot = _snapshot(Aggregator(_config(tmp_path), _runner(fake_runner, make_issue), now=lambda: NOW))

    assert [issue.id for issue in snapshot.issues] == ["gt-f", "gt-a", "gt-b"]
    [convoy] = snapshot.convoys
    assert convoy.id == "gt-f"
    assert convoy.status == "active"
    assert convoy.assignee == "nux"


def test_refinery_queues_are_merged_by_rig(tmp_path, fake_runner, make_issue) -> None:
    _write_registry(tmp_path, "gastown", "beads")
    runner = _runner(fake_runner, make_issue)
    snapshot = _snapshot(Aggregator(_config(tmp_path), runner, now=lambda: NOW))

    refineries = {r.rig: r for r in snapshot.refineries}
    gastown = refineries["gastown"]
    assert gastown.id == "gastown/refinery"
    assert gastown.queue_depth == 2
    assert gastown.current_pr is not None and gastown.current_pr.number == 41
    assert [pr.number for pr in gastown.pending_prs] == [42]

    synthetic = refineries["beads"]
    assert synthetic.id == "refinery-beads"
    assert synthetic.status == "idle"
    assert synthetic.queue_depth == 2
    assert set(runner.cwds) >= {tmp_path / "gastown", tmp_path / "beads"}


def test_fetched_convoys_are_appended_and_sorted(tmp_path, fake_runner, make_issue) -> None:
    runner = _runner(fake_runner, make_issue)
    runner.responses[CONVOY_LIST] = [{"id": "hq-cv-1", "title": "Landed"}, {"id": "gt-f", "title": "dup"}]
    runner.responses[("gt", "convoy", "status", "hq-cv-1", "--json")] = {
        "status": "landed",
        "tracked": [{"id": "gt-x", "status": "closed"}],
    }
    snapshot = _snapshot(Aggregator(_config(tmp_path), runner, now=lambda: NOW))

    assert [(c.id, c.status) for c in snapshot.convoys] == [
        ("gt-f", "active"),
        ("hq-cv-1", "completed"),
    ]


def test_convoy_detail_failure_falls_back_to_previous_snapshot(
    tmp_path, fake_runner, make_issue
) -> None:
    detail_key = ("gt", "convoy", "status", "hq-cv-1", "--json")
    runner = _runner(fake_runner, make_issue)
    runner.responses[CONVOY_LIST] = [{"id": "hq-cv-1", "title": "Ship login"}]
    runner.responses[detail_key] = {
        "tracked": [{"id": "gt-x", "status": "closed"}, {"id": "gt-y", "status": "open"}],
    }
    aggregator = Aggregator(_config(tmp_path), runner, now=lambda: NOW)

    async def scenario():
        first = await aggregator.snapshot()
        del runner.responses[detail_key]
        runner.responses[CONVOY_LIST] = [{"id": "hq-cv-1", "title": "Ship login v2"}]
        aggregator.cache.clear()
        second = await aggregator.snapshot()
        return first, second

    first, second = asyncio.run(scenario())

    assert isinstance(second, Snapshot)
    convoy = next(c for c in second.convoys if c.id == "hq-cv-1")
    assert convoy.title == "Ship login v2"
    assert convoy.issues == ("gt-x", "gt-y")
    assert convoy.progress.completed == 1
    assert second.sources["convoys"]["fallback"] is True


class FakeCapture:
    def __init__(self, panes: dict[str, str], *, available: bool = True) -> None:
        self.panes = panes
        self._available = available

    def available(self) -> bool:
        return self._available

    async def capture(self, session: str) -> str:
        if session not in self.panes:
            raise CommandError(["tmux", "capture-pane", "-t", session, "-p"], 1, "", "no session")
        return self.panes[session]


def test_activity_monitor_reports_running_sessions(fake_runner) -> None:
    status = LiveStatusFetcher(fake_runner({GT_STATUS: STATUS}))
    capture = FakeCapture({"gt-gastown-nux": "⏺ Read(a.py)"})
    monitor = ActivityMonitor(status, capture, ActivityHistory())

    async def scenario():
        first = await monitor.collect()
        capture.panes["gt-gastown-nux"] = "⏺ Read(a.py)\n✻ Editing… (3s)"
        second = await monitor.collect()
        return first, second

    first, second = asyncio.run(scenario())

    assert first["tmux_available"] is True
    [entry] = first["activities"]
    assert entry["session"] == "gt-gastown-nux"
    assert entry["role"] == "polecat"
    assert entry["activity"] == "Read: a.py"
    assert entry["tool"] == "Read"
    assert entry["activities"] == ["Read: a.py"]

    [entry] = second["activities"]
    assert entry["activity"] == "Editing"
    assert entry["duration"] == "3s"
    assert entry["activities"] == ["Editing", "Read: a.py"]


def test_activity_monitor_without_tmux(fake_runner) -> None:
    runner = fake_runner({GT_STATUS: STATUS})
    monitor = ActivityMonitor(LiveStatusFetcher(runner), FakeCapture({}, available=False))

    report = asyncio.run(monitor.collect())

    assert report == {"activities": [], "tmux_available": False}
    assert runner.calls == []


def test_activity_monitor_reports_status_failure(fake_runner) -> None:
    monitor = ActivityMonitor(LiveStatusFetcher(fake_runner()), FakeCapture({}))

    report = asyncio.run(monitor.collect())

    assert report["activities"] == []
    assert report["error"] == "Could not get gt status"
