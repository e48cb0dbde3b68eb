"""Token budget allocation across composition components.

Every strategy is a pure function returning per-component budgets whose sum
never exceeds the total.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum

from .errors import InvalidSettings


class AllocationStrategy(StrEnum):
    EQUAL = "equal"
    PROPORTIONAL = "proportional"
    RECENCY = "recency"
    INVERSE_RECENCY = "inverse_recency"
    CUSTOM = "custom"
    MANUAL = "manual"


def _weighted(available: int, weights: Sequence[float]) -> list[int]:
    total = sum(weights)
    if total <= 0:
        return _equal(available, len(weights))
    return [int(available * w / total) for w in weights]


def _equal(available: int, n: int) -> list[int]:
    return [available // n] * n


def allocate_budget(
    strategy: AllocationStrategy | str,
    total_budget: int,
    original_tokens: Sequence[int],
    *,
    weights: Sequence[float] | None = None,
    manual: Sequence[int] | None = None,
    overhead: int = 0,
) -> list[int]:
    """Split *total_budget* across ``len(original_tokens)`` components.

    ``overhead`` tokens per component are reserved (for boundary markers)
    before splitting.  ``manual`` allocations are validated, not adjusted.
    """
    n = len(original_tokens)
    if n == 0:
        return []
    try:
        strategy = AllocationStrategy(strategy)
    except ValueError:
        raise InvalidSettings(f"Unknown allocation strategy: {strategy}") from None
    if total_budget <= 0:
        raise InvalidSettings("total_budget must be positive")

    if strategy == AllocationStrategy.MANUAL:
        if manual is None or len(manual) != n:
            raise InvalidSettings("manual allocation needs one budget per component")
        if any(b < 0 for b in manual):
            raise InvalidSettings("manual budgets must be non-negative")
        if sum(manual) > total_budget:
            raise InvalidSettings(
                f"manual budgets sum to {sum(manual)}, above total {total_budget}"
            )
        return list(manual)

    available = max(0, total_budget - overhead * n)
    if strategy == AllocationStrategy.EQUAL:
        return _equal(available, n)
    if strategy == AllocationStrategy.PROPORTIONAL:
        return _weighted(available, [max(0, t) for t in original_tokens])
    if strategy == AllocationStrategy.RECENCY:
        return _weighted(available, [i + 1 for i in range(n)])
    if strategy == AllocationStrategy.INVERSE_RECENCY:
        return _weighted(available, [n - i for i in range(n)])
    # CUSTOM
    if weights is None or len(weights) != n:
        raise InvalidSettings("custom allocation needs one weight per component")
    if any(w < 0 for w in weights):
        raise InvalidSettings("custom weights must be non-negative")
    return _weighted(available, weights)


@dataclass
class AllocationSuggestion:
    strategy: AllocationStrategy
    reasoning: str
    allocations: list[int]

    def compression_required(self, original_tokens: Sequence[int]) -> list[bool]:
        return [t > b for t, b in zip(original_tokens, self.allocations)]


def suggest_allocation(
    original_tokens: Sequence[int], total_budget: int, overhead: int = 0
) -> AllocationSuggestion:
    """Pick a strategy from the size spread and number of sessions."""
    sizes = list(original_tokens)
    smallest = min(sizes) if sizes else 0
    variation = max(sizes) / smallest if smallest > 0 else float("inf")
    if len(sizes) > 1 and variation > 3:
        strategy = AllocationStrategy.PROPORTIONAL
        reasoning = "Sessions vary significantly in size; proportional allocation keeps relative detail."
    elif len(sizes) > 5:
        strategy = AllocationStrategy.RECENCY
        reasoning = "Many sessions; recency weighting favours recent context."
    else:
        strategy = AllocationStrategy.EQUAL
        reasoning = "Sessions are similar in size; equal allocation is appropriate."
    return AllocationSuggestion(
        strategy=strategy,
        reasoning=reasoning,
        allocations=allocate_budget(strategy, total_budget, sizes, overhead=overhead),
    )


class BudgetLedger:
    """Token consumption per component against the composition total."""

    def __init__(self, total_tokens: int, allocations: Sequence[int]) -> None:
        if total_tokens <= 0:
            msg = "total_tokens must be positive"
            raise ValueError(msg)
        self._total = total_tokens
        self._allocations = list(allocations)
        self._used = [0] * len(self._allocations)

    def charge(self, index: int, tokens: int) -> None:
        self._used[index] += tokens

    @property
    def total_tokens(self) -> int:
        return self._total

    @property
    def used(self) -> int:
        return sum(self._used)

    def remaining(self) -> int:
        return self._total - self.used

    def fits(self) -> bool:
        return self.used <= self._total

    def overflow(self) -> int:
        return max(0, self.used - self._total)

    def over_allocation(self) -> list[int]:
        """Indexes of components that used more than their share."""
        return [
            i for i, (used, share) in enumerate(zip(self._used, self._allocations)) if used > share
        ]
