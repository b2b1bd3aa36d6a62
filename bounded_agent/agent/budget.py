"""Budget ledger for bounded agent task execution."""

from __future__ import annotations

import math
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, Literal, Mapping

from bounded_agent.core.exceptions import BudgetExceeded

ResourceKind = Literal["steps", "tokens", "cost", "duration"]
RESOURCE_KINDS: tuple[ResourceKind, ...] = ("steps", "tokens", "cost", "duration")

# Float slack so that summed cents do not trip the limit on rounding noise.
_EPSILON = 1e-9


@dataclass
class Budget:
    """Hard limits for one task."""

    max_steps: int = 10
    max_tokens: int = 200_000
    max_cost_usd: float = 0.50
    max_duration_seconds: float = 300.0

    def limit_for(self, kind: ResourceKind) -> float:
        if kind == "steps":
            return self.max_steps
        if kind == "tokens":
            return self.max_tokens
        if kind == "cost":
            return self.max_cost_usd
        if kind == "duration":
            return self.max_duration_seconds
        raise ValueError(f"Unknown resource kind: {kind!r}")


@dataclass
class BudgetSnapshot:
    """Read-only capture of current usage."""

    steps_taken: int = 0
    tokens_used: int = 0
    cost_usd: float = 0.0
    elapsed_seconds: float = 0.0
    max_steps: int = Budget().max_steps
    max_tokens: int = Budget().max_tokens
    max_cost_usd: float = Budget().max_cost_usd
    max_duration_seconds: float = Budget().max_duration_seconds
    exhausted: Dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, float | int | Dict[str, bool]]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "BudgetSnapshot":
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{key: value for key, value in payload.items() if key in known})


class BudgetLedger:
    """Per-task counters checked against a :class:`Budget`.

    Every ``record*`` call is all-or-nothing: either all counters move or the
    ledger is left exactly as it was and :class:`BudgetExceeded` is raised.
    Wall-clock duration is never enforced by a timer; callers sync it at step
    boundaries through :meth:`tick`.
    """

    def __init__(self, budget: Budget, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.budget = budget
        self._clock = clock
        self._started_at = clock()
        self._elapsed_offset = 0.0
        self._consumed: Dict[str, float] = {kind: 0 for kind in RESOURCE_KINDS}
        self._lock = threading.Lock()

    # --- Recording ---

    def record(self, kind: ResourceKind, amount: float) -> BudgetSnapshot:
        """Increment one counter, failing if the result would exceed its limit."""
        return self._apply({kind: amount})

    def record_usage(
        self,
        *,
        steps: int = 0,
        tokens: int = 0,
        cost_usd: float = 0.0,
    ) -> BudgetSnapshot:
        """Record several resources at once; validated together before any update."""
        return self._apply({"steps": steps, "tokens": tokens, "cost": cost_usd})

    def tick(self) -> BudgetSnapshot:
        """Sync the duration counter with elapsed wall-clock time (capped at its limit)."""
        with self._lock:
            limit = self.budget.max_duration_seconds
            target = min(self._elapsed(), limit)
            if target > self._consumed["duration"]:
                self._consumed["duration"] = target
            return self._snapshot_locked()

    def _apply(self, deltas: Mapping[str, float]) -> BudgetSnapshot:
        for kind, amount in deltas.items():
            _validate_amount(kind, amount)
        with self._lock:
            for kind, amount in deltas.items():
                if not amount:
                    continue
                attempted = self._consumed[kind] + amount
                limit = self.budget.limit_for(kind)  # type: ignore[arg-type]
                if attempted > limit + _EPSILON:
                    raise BudgetExceeded(
                        kind,
                        attempted,
                        limit,
                        details={"consumed": self._consumed[kind], "requested": amount},
                    )
            for kind, amount in deltas.items():
                limit = self.budget.limit_for(kind)  # type: ignore[arg-type]
                # Rounding slack is absorbed at the limit, never stored past it.
                self._consumed[kind] = min(self._consumed[kind] + amount, limit)
            return self._snapshot_locked()

    # --- Queries ---

    def consumed(self, kind: ResourceKind) -> float:
        _validate_kind(kind)
        return self._consumed[kind]

    def remaining(self, kind: ResourceKind) -> float:
        _validate_kind(kind)
        used = self._consumed[kind]
        if kind == "duration":
            used = max(used, self._elapsed())
        return max(self.budget.limit_for(kind) - used, 0)

    def elapsed_seconds(self) -> float:
        return self._elapsed()

    def is_exhausted(self) -> bool:
        """True if any counter is at or over its limit, wall-clock time included."""
        return any(self._exhaustion().values())

    def exhausted_resources(self) -> list[str]:
        return [kind for kind, hit in self._exhaustion().items() if hit]

    def snapshot(self) -> BudgetSnapshot:
        with self._lock:
            return self._snapshot_locked()

    def restore(self, snapshot: BudgetSnapshot) -> None:
        """Carry counters over from a checkpoint; counters never move backwards."""
        with self._lock:
            restored = {
                "steps": snapshot.steps_taken,
                "tokens": snapshot.tokens_used,
                "cost": snapshot.cost_usd,
                "duration": snapshot.elapsed_seconds,
            }
            for kind, value in restored.items():
                self._consumed[kind] = max(self._consumed[kind], value)
            self._elapsed_offset = max(self._elapsed_offset, snapshot.elapsed_seconds)
            self._started_at = self._clock()

    # --- Internals ---

    def _elapsed(self) -> float:
        return self._elapsed_offset + max(self._clock() - self._started_at, 0.0)

    def _exhaustion(self) -> Dict[str, bool]:
        flags = {
            kind: self._consumed[kind] >= self.budget.limit_for(kind) - _EPSILON
            for kind in RESOURCE_KINDS
        }
        flags["duration"] = flags["duration"] or self._elapsed() >= self.budget.max_duration_seconds
        return flags

    def _snapshot_locked(self) -> BudgetSnapshot:
        return BudgetSnapshot(
            steps_taken=int(self._consumed["steps"]),
            tokens_used=int(self._consumed["tokens"]),
            cost_usd=round(float(self._consumed["cost"]), 8),
            elapsed_seconds=round(float(self._consumed["duration"]), 6),
            max_steps=self.budget.max_steps,
            max_tokens=self.budget.max_tokens,
            max_cost_usd=self.budget.max_cost_usd,
            max_duration_seconds=self.budget.max_duration_seconds,
            exhausted=self._exhaustion(),
        )


def _validate_kind(kind: str) -> None:
    if kind not in RESOURCE_KINDS:
        raise ValueError(f"Unknown resource kind: {kind!r}")


def _validate_amount(kind: str, amount: float) -> None:
    _validate_kind(kind)
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise ValueError(f"Amount for '{kind}' must be a number, got {amount!r}")
    if math.isnan(amount) or amount < 0:
        raise ValueError(f"Amount for '{kind}' must be non-negative, got {amount!r}")
