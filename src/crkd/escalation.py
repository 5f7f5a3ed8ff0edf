# escalation.py
# Retry-driven model escalation across an ordered tier table.
#
# Each tracked target (a file path, usually) carries a try count. The global
# count is the MAXIMUM across targets, not the sum: one file retried over and
# over escalates the model for every later call. Escalation never goes below
# the last configured tier and never wraps around.

import logging
from typing import Callable, Sequence

from crkd.models import EscalationEvent, ModelTier

logger = logging.getLogger(__name__)

DEFAULT_MODEL_TIERS: tuple[ModelTier, ...] = (
    ModelTier(
        model_id="qwen/qwen-2.5-coder-32b-instruct",
        max_local_tries=2,
        max_global_tries=10,
        description="Cheap, fast, slightly better than GPT4o-mini",
    ),
    ModelTier(
        model_id="anthropic/claude-3.5-sonnet:beta",
        max_local_tries=2,
        max_global_tries=15,
        description="Scaled model for retry attempts",
    ),
    ModelTier(
        model_id="openai/gpt-4o-2024-11-20",
        max_local_tries=2,
        max_global_tries=20,
        description="Scaled model for retry attempts",
    ),
    ModelTier(
        model_id="openai/o1-preview",
        max_local_tries=2,
        max_global_tries=25,
        description="Last resort for files that keep failing",
    ),
)

EscalationListener = Callable[[EscalationEvent], None]


def resolve_tier(tiers: Sequence[ModelTier], local_tries: int, global_tries: int) -> int:
    """
    Index of the first tier whose cumulative local budget and global budget
    both still have room. Falls back to the last tier when all are exhausted.
    """
    cumulative = 0
    for index, tier in enumerate(tiers):
        cumulative += tier.max_local_tries
        if local_tries < cumulative and global_tries < tier.max_global_tries:
            return index
    return len(tiers) - 1


class ModelEscalationPolicy:
    """
    Owns the retry state and maps it onto a model id.

    No other component mutates the counts: everything goes through
    set_try_count, increment_try_count and reset.

    Example:
        policy = ModelEscalationPolicy()
        policy.set_try_count("src/app.py", 2)
        policy.get_current_model()  # -> tier 1's model id
    """

    def __init__(
        self,
        tiers: Sequence[ModelTier] = DEFAULT_MODEL_TIERS,
        listeners: Sequence[EscalationListener] = (),
    ) -> None:
        if not tiers:
            raise ValueError("Cannot build an escalation policy from an empty tier table.")
        self._tiers: tuple[ModelTier, ...] = tuple(tiers)
        self._listeners: list[EscalationListener] = list(listeners)
        self._counts: dict[str, int] = {}
        self._current_index = 0

    # ------------------------------------------------------------------
    # Pure resolution
    # ------------------------------------------------------------------

    def get_model_for_try_count(self, local_tries: int, global_tries: int) -> str:
        """Model for the given counts. Does not touch the retry state."""
        index = resolve_tier(self._tiers, local_tries, global_tries)
        self._emit(target=None, count=local_tries, index=index, changed=False, global_tries=global_tries)
        return self._tiers[index].model_id

    # ------------------------------------------------------------------
    # Retry state
    # ------------------------------------------------------------------

    def set_try_count(self, target: str, count: int) -> str:
        if count < 0:
            raise ValueError(f"Try count must be >= 0, got {count} for {target!r}.")
        self._counts[target] = count
        return self._resolve(target)

    def increment_try_count(self, target: str) -> str:
        self._counts[target] = self._counts.get(target, 0) + 1
        return self._resolve(target)

    def get_try_count(self, target: str) -> int:
        return self._counts.get(target, 0)

    def get_global_try_count(self) -> int:
        return max(self._counts.values(), default=0)

    def get_current_model(self) -> str:
        """Current model id. Queries emit an event too, with changed=False."""
        self._emit(target=None, count=self.get_global_try_count(), index=self._current_index, changed=False)
        return self._tiers[self._current_index].model_id

    def current_tier(self) -> int:
        return self._current_index

    def reset(self) -> None:
        self._counts.clear()
        self._current_index = 0
        logger.debug("Escalation state reset", extra={"model_id": self._tiers[0].model_id})

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def add_listener(self, listener: EscalationListener) -> None:
        self._listeners.append(listener)

    @property
    def tiers(self) -> tuple[ModelTier, ...]:
        return self._tiers

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve(self, target: str) -> str:
        global_tries = self.get_global_try_count()
        index = resolve_tier(self._tiers, global_tries, global_tries)
        changed = index != self._current_index
        self._current_index = index
        self._emit(target=target, count=self._counts[target], index=index, changed=changed)
        return self._tiers[index].model_id

    def _emit(
        self,
        target: str | None,
        count: int,
        index: int,
        changed: bool,
        global_tries: int | None = None,
    ) -> None:
        tier = self._tiers[index]
        if global_tries is None:
            global_tries = self.get_global_try_count()
        event = EscalationEvent(
            target=target,
            count=count,
            tier_index=index,
            tier_max_tries=tier.max_local_tries,
            global_tries=global_tries,
            model_id=tier.model_id,
            changed=changed,
        )
        logger.info(
            "Model resolved: %s (tier %d, target=%s, count=%d/%d)",
            tier.model_id,
            index,
            target,
            count,
            tier.max_local_tries,
            extra={"escalation": event.model_dump()},
        )
        for listener in self._listeners:
            listener(event)
