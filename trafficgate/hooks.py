"""
Gate Hooks - Extension points around each evaluation.

Observers (visitor logging, analytics) are notified in parallel and can
never change a response. before_redirect is a rewriting hook: handlers are
chained by priority and any handler may hand back a replacement payload,
e.g. to send a campaign to a different target.
"""
from __future__ import annotations

import asyncio
import bisect
from collections import Counter
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

ON_QUICK_DECISION = "on_quick_decision"
ON_CHALLENGE_SERVED = "on_challenge_served"
ON_FINAL_DECISION = "on_final_decision"
ON_SIGNAL_ERROR = "on_signal_error"
BEFORE_REDIRECT = "before_redirect"

HOOK_KINDS: dict[str, str] = {
    ON_QUICK_DECISION: "void",
    ON_CHALLENGE_SERVED: "void",
    ON_FINAL_DECISION: "void",
    ON_SIGNAL_ERROR: "void",
    BEFORE_REDIRECT: "modifying",
}
VOID_HOOKS = frozenset(name for name, kind in HOOK_KINDS.items() if kind == "void")
MODIFYING_HOOKS = frozenset(name for name, kind in HOOK_KINDS.items() if kind == "modifying")

HookHandler = Callable[[dict[str, Any]], Awaitable[Optional[dict[str, Any]]]]


@dataclass
class HookRegistration:
    hook_name: str
    handler: HookHandler
    plugin_id: str = ""
    priority: int = 0

    @property
    def label(self) -> str:
        return self.plugin_id or getattr(self.handler, "__qualname__", "anonymous")


class HookRunner:
    """Holds registrations per hook, ordered by descending priority"""

    def __init__(self, void_timeout: float = 2.0):
        self._hooks: dict[str, list[HookRegistration]] = {}
        self._void_timeout = void_timeout
        self._failures: Counter[str] = Counter()

    def register(self, hook_name: str, handler: HookHandler, *, plugin_id: str = "", priority: int = 0) -> None:
        if hook_name not in HOOK_KINDS:
            raise ValueError(f"Unknown hook: {hook_name}")
        bisect.insort(
            self._hooks.setdefault(hook_name, []),
            HookRegistration(hook_name, handler, plugin_id, priority),
            key=lambda reg: -reg.priority,
        )

    def unregister(self, hook_name: str, handler: HookHandler) -> None:
        kept = [reg for reg in self._hooks.pop(hook_name, []) if reg.handler is not handler]
        if kept:
            self._hooks[hook_name] = kept

    def has_hooks(self, hook_name: str) -> bool:
        return len(self._hooks.get(hook_name, ())) > 0

    def _record_failure(self, reg: HookRegistration, reason: str) -> None:
        self._failures[reg.label] += 1
        logger.bind(hook=reg.hook_name, plugin=reg.label).warning(
            f"Gate hook {reg.hook_name} skipped {reg.label}: {reason}"
        )

    async def _notify(self, reg: HookRegistration, event: dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(reg.handler(event), timeout=self._void_timeout)
        except asyncio.TimeoutError:
            self._record_failure(reg, f"no result after {self._void_timeout}s")
        except Exception as e:
            self._record_failure(reg, repr(e))

    async def run_void(self, hook_name: str, event: dict[str, Any]) -> None:
        """Notify every observer concurrently. Each gets its own copy of the event."""
        observers = self._hooks.get(hook_name)
        if observers:
            await asyncio.gather(*(self._notify(reg, dict(event)) for reg in observers))

    async def run_modifying(self, hook_name: str, event: dict[str, Any]) -> dict[str, Any]:
        """
        Chain rewriting handlers by priority.

        A dict result becomes the payload for the next handler. Failing
        handlers and non-dict results leave the payload as it was.
        """
        payload = event
        for reg in self._hooks.get(hook_name, ()):
            try:
                rewritten = await reg.handler(payload)
            except Exception as e:
                self._record_failure(reg, repr(e))
                continue
            if isinstance(rewritten, dict):
                payload = rewritten
        return payload

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_hooks": sum(map(len, self._hooks.values())),
            "errors": sum(self._failures.values()),
            "errors_by_plugin": dict(self._failures),
            "hook_names": {name: len(regs) for name, regs in self._hooks.items()},
        }
