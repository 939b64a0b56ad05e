from __future__ import annotations

from typing import TYPE_CHECKING

__all__ = [
    "__version__",
    "Aggregator",
    "AggregationFailure",
    "MonitorConfig",
    "Snapshot",
    "load_config",
]

__version__ = "0.1.0"

if TYPE_CHECKING:
    from .config import MonitorConfig, load_config
    from .models import AggregationFailure, Snapshot
    from .monitor import Aggregator


def __getattr__(name: str):
    if name == "Aggregator":
        from .monitor import Aggregator

        return Aggregator
    if name in {"AggregationFailure", "Snapshot"}:
        from .models import AggregationFailure, Snapshot

        return {"AggregationFailure": AggregationFailure, "Snapshot": Snapshot}[name]
    if name in {"MonitorConfig", "load_config"}:
        from .config import MonitorConfig, load_config

        return {"MonitorConfig": MonitorConfig, "load_config": load_config}[name]
    raise AttributeError(f"module 'rigwatch' has no attribute {name!r}")
