"""
Config Hot Reload - Watches the .env file and rebuilds gate configuration.

The watcher polls the file's (mtime, size) signature. When it changes, the
parsed values are diffed against the last baseline and the changed keys
are classified into a ReloadPlan:

  routes   GATE_*_URL                                  applied live
  scoring  weights, thresholds, telemetry, lists       applied live
  restart  REDIS_*, LOG_*, GATE_HOST/PORT, replay window  logged only
"""
from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Optional

from dotenv import dotenv_values
from loguru import logger

ROUTES = "reload_routes"
SCORING = "reload_scoring"
RESTART = "restart_required"

# (key prefix, plan flag), first match wins
RELOAD_RULES: list[tuple[str, str]] = [
    ("gate_target_url", ROUTES),
    ("gate_challenge_url", ROUTES),
    ("gate_block_url", ROUTES),
    ("gate_fallback_url", ROUTES),
    ("gate_weight_", SCORING),
    ("gate_block_threshold", SCORING),
    ("gate_challenge_threshold", SCORING),
    ("gate_quick_allow_threshold", SCORING),
    ("gate_block_on_critical", SCORING),
    ("gate_capture_window", SCORING),
    ("gate_challenge_ttl", SCORING),
    ("gate_replay_limit", SCORING),
    ("gate_blocked_countries", SCORING),
    ("gate_referer_denylist", SCORING),
    ("gate_allowed_", SCORING),
    ("gate_require_fingerprint", SCORING),
    ("gate_min_score", SCORING),
    ("gate_replay_window", RESTART),
    ("gate_host", RESTART),
    ("gate_port", RESTART),
    ("redis_", RESTART),
    ("log_", RESTART),
]


@dataclass
class ReloadPlan:
    changed_keys: list[str]
    reload_routes: bool = False
    reload_scoring: bool = False
    restart_required: bool = False
    ignored_keys: list[str] = field(default_factory=list)

    @property
    def needs_rebuild(self) -> bool:
        """True when the evaluator config must be rebuilt"""
        return self.reload_routes or self.reload_scoring


def _rule_for(key: str) -> Optional[str]:
    lowered = key.lower()
    for prefix, flag in RELOAD_RULES:
        if lowered.startswith(prefix):
            return flag
    return None


def build_reload_plan(changed_keys: list[str]) -> ReloadPlan:
    plan = ReloadPlan(changed_keys=list(changed_keys))
    for key in plan.changed_keys:
        flag = _rule_for(key)
        if flag:
            setattr(plan, flag, True)
        else:
            plan.ignored_keys.append(key)
    return plan


ReloadCallback = Callable[[ReloadPlan], Coroutine[Any, Any, None]]


class ConfigReloader:
    """
    Polls an env file and notifies listeners with a ReloadPlan.

    After a signature change the watcher sleeps `debounce` seconds before
    reading, so an editor's multi-step save is read once.
    """

    def __init__(self, env_path: str = ".env", poll_interval: float = 2.0, debounce: float = 0.3):
        self._path = env_path
        self._poll_interval = poll_interval
        self._debounce = debounce
        self._signature: tuple[float, int] = (0.0, -1)
        self._baseline: dict[str, str] = {}
        self._listeners: list[ReloadCallback] = []
        self._watch_task: Optional[asyncio.Task] = None

    @property
    def env_path(self) -> str:
        return self._path

    @property
    def running(self) -> bool:
        return self._watch_task is not None and not self._watch_task.done()

    def on_reload(self, callback: ReloadCallback) -> None:
        self._listeners.append(callback)

    def snapshot(self) -> None:
        """Take the current file contents as the baseline"""
        self._signature = self._file_signature()
        self._baseline = self._read_env()

    async def start(self) -> None:
        if self.running:
            return
        self.snapshot()
        self._watch_task = asyncio.create_task(self._poll_loop())
        logger.info(f"Watching {self._path} for gate config changes")

    async def stop(self) -> None:
        task, self._watch_task = self._watch_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"Stopped watching {self._path}")

    def _file_signature(self) -> tuple[float, int]:
        try:
            st = os.stat(self._path)
        except OSError:
            return (0.0, -1)
        return (st.st_mtime, st.st_size)

    def _read_env(self) -> dict[str, str]:
        if not os.path.isfile(self._path):
            return {}
        return {key: value or "" for key, value in dotenv_values(self._path).items()}

    def _detect_changes(self) -> list[str]:
        """Keys added, removed or modified since the baseline. Moves the baseline."""
        current = self._read_env()
        previous, self._baseline = self._baseline, current
        return sorted(k for k in previous.keys() | current.keys() if previous.get(k, "") != current.get(k, ""))

    async def check_now(self) -> Optional[ReloadPlan]:
        """Diff against the baseline and notify listeners. None when nothing changed."""
        self._signature = self._file_signature()
        changed = self._detect_changes()
        if not changed:
            return None

        plan = build_reload_plan(changed)
        logger.info(f"Gate config changed: {', '.join(changed)}")
        if plan.restart_required:
            logger.warning("Restart required for: " + ", ".join(
                k for k in changed if _rule_for(k) == RESTART
            ))

        for listener in self._listeners:
            try:
                await listener(plan)
            except Exception as e:
                logger.error(f"Reload listener failed: {e}")
        return plan

    async def _poll_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._poll_interval)
                if self._file_signature() == self._signature:
                    continue
                await asyncio.sleep(self._debounce)
                await self.check_now()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Config watch error: {e}")
