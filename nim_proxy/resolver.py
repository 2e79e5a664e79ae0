from __future__ import annotations

import threading
from types import MappingProxyType
from typing import Awaitable, Callable, Dict, Mapping, Optional, Tuple

from .logger import get_logger


logger = get_logger("resolver")

# Memo value for ids the upstream did not accept verbatim
UNCONFIRMED = None

# (markers, tier) checked in order; first hit wins
_TIER_MARKERS: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("gpt-4", "claude-opus", "405b"), "large"),
    (("claude", "gemini", "70b"), "medium"),
)


class ResolutionMemo:
    """Process-lifetime map of unrecognised model id -> confirmed id or UNCONFIRMED.

    Each write replaces a single key under the lock; concurrent resolutions of
    the same id simply race and the last writer wins.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Optional[str]] = {}
        self._lock = threading.Lock()

    def lookup(self, model: str) -> Tuple[bool, Optional[str]]:
        """Return (known, value); value is UNCONFIRMED for rejected ids."""
        with self._lock:
            if model in self._entries:
                return True, self._entries[model]
        return False, None

    def confirm(self, model: str, upstream_model: str) -> None:
        with self._lock:
            self._entries[model] = upstream_model

    def mark_unconfirmed(self, model: str) -> None:
        with self._lock:
            self._entries[model] = UNCONFIRMED

    def snapshot(self) -> Dict[str, Optional[str]]:
        with self._lock:
            return dict(self._entries)

    def clear(self) -> int:
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def fallback_tier(requested_model: Optional[str]) -> str:
    lower = (requested_model or "").lower()
    for markers, tier in _TIER_MARKERS:
        if any(m in lower for m in markers):
            return tier
    return "small"


class ModelResolver:
    def __init__(
        self,
        aliases: Mapping[str, str],
        memo: ResolutionMemo,
        probe: Callable[[str], Awaitable[bool]],
        fallbacks: Mapping[str, str],
    ) -> None:
        self.aliases = MappingProxyType(dict(aliases))
        self.memo = memo
        self._probe = probe
        self.fallbacks = MappingProxyType(dict(fallbacks))

    async def resolve(self, requested_model: Optional[str]) -> str:
        """Map a caller model id onto an upstream model id. Never raises."""
        if requested_model and requested_model in self.aliases:
            return self.aliases[requested_model]
        if not requested_model:
            return self._fallback(requested_model)

        known, cached = self.memo.lookup(requested_model)
        if known:
            if cached is not UNCONFIRMED:
                return cached
            return self._fallback(requested_model)

        if await self._probe_safely(requested_model):
            self.memo.confirm(requested_model, requested_model)
            logger.info("model '%s' accepted by upstream as-is", requested_model)
            return requested_model
        self.memo.mark_unconfirmed(requested_model)
        return self._fallback(requested_model)

    async def _probe_safely(self, model: str) -> bool:
        try:
            return bool(await self._probe(model))
        except Exception as e:
            logger.warning("model probe failed for '%s': %s: %s", model, type(e).__name__, e)
            return False

    def _fallback(self, requested_model: Optional[str]) -> str:
        tier = fallback_tier(requested_model)
        resolved = self.fallbacks[tier]
        logger.info("model '%s' resolved by %s-tier fallback -> '%s'", requested_model, tier, resolved)
        return resolved
