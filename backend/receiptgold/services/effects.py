"""Fire-and-forget side effects collected during a critical write.

Handlers queue audit entries, notifications and similar follow-ups while
they compute the main write, then dispatch the queue once that write has
succeeded.  Each effect runs independently; a failure is logged and never
reaches the caller.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, List, Tuple

logger = logging.getLogger(__name__)

EffectFn = Callable[..., Awaitable[Any]]


class EffectQueue:
    def __init__(self) -> None:
        self._effects: List[Tuple[str, EffectFn, tuple, dict]] = []

    def add(self, name: str, fn: EffectFn, *args: Any, **kwargs: Any) -> None:
        self._effects.append((name, fn, args, kwargs))

    def __len__(self) -> int:
        return len(self._effects)

    @property
    def names(self) -> List[str]:
        return [name for name, *_ in self._effects]

    async def dispatch(self) -> List[str]:
        """Run every queued effect; return the names of those that failed."""
        failed: List[str] = []
        effects, self._effects = self._effects, []
        for name, fn, args, kwargs in effects:
            try:
                await fn(*args, **kwargs)
            except Exception:
                logger.exception("[effects] %s failed", name)
                failed.append(name)
        return failed


__all__ = ["EffectQueue"]
