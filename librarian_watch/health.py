# Derived watcher health for status and diagnostic tooling
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from librarian_watch.state import WatchState

DEFAULT_HEARTBEAT_INTERVAL_MS = 30_000
STALENESS_HEARTBEATS = 4


@dataclass
class WatchHealth:
    """Ages are milliseconds relative to the evaluation time; None when unknown."""

    suspected_dead: bool
    heartbeat_age_ms: Optional[int]
    event_age_ms: Optional[int]
    reindex_age_ms: Optional[int]
    reconcile_age_ms: Optional[int]
    staleness_ms: int


def _age_ms(timestamp: Optional[str], now: datetime) -> Optional[int]:
    if not timestamp:
        return None
    try:
        parsed = datetime.fromisoformat(timestamp)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return max(0, int((now - parsed).total_seconds() * 1000))


def derive_watch_health(state: Optional[WatchState], now: Optional[datetime] = None) -> Optional[WatchHealth]:
    """Compute ages and the suspected-dead verdict from a watch state document."""
    if state is None:
        return None
    now = now or datetime.now(timezone.utc)

    config = state.effective_config
    interval = config.get(
        "heartbeatIntervalMs", config.get("heartbeat_interval_ms", DEFAULT_HEARTBEAT_INTERVAL_MS)
    )
    try:
        staleness_ms = int(interval) * STALENESS_HEARTBEATS
    except (TypeError, ValueError):
        staleness_ms = DEFAULT_HEARTBEAT_INTERVAL_MS * STALENESS_HEARTBEATS

    heartbeat_age = _age_ms(state.watch_last_heartbeat_at, now)
    suspected_dead = (
        state.suspected_dead or heartbeat_age is None or heartbeat_age > staleness_ms
    )
    return WatchHealth(
        suspected_dead=suspected_dead,
        heartbeat_age_ms=heartbeat_age,
        event_age_ms=_age_ms(state.watch_last_event_at, now),
        reindex_age_ms=_age_ms(state.watch_last_reindex_ok_at, now),
        reconcile_age_ms=_age_ms(state.watch_last_reconcile_completed_at, now),
        staleness_ms=staleness_ms,
    )


def describe_watch_degradation(state: Optional[WatchState], health: Optional[WatchHealth]) -> List[str]:
    """Human-readable problems, empty when the watcher looks healthy."""
    if state is None:
        return ["no watch state recorded"]
    problems: List[str] = []
    if not state.storage_attached:
        problems.append("storage detached")
    if state.last_error:
        problems.append(f"last error: {state.last_error}")
    if health is not None and health.suspected_dead:
        problems.append("watcher suspected dead")
    if state.needs_catchup:
        problems.append("needs catch-up")
    if (
        health is not None
        and health.reconcile_age_ms is not None
        and health.reconcile_age_ms > health.staleness_ms
    ):
        problems.append("reconcile stale")
    return problems
