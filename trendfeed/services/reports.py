from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, TypeVar

from trendfeed.errors import TrendFeedError

T = TypeVar("T")


@dataclass(frozen=True)
class ItemFailure:
    item_id: str
    code: str
    message: str

    @classmethod
    def from_error(cls, item_id: str, error: TrendFeedError) -> ItemFailure:
        return cls(item_id=item_id, code=error.code, message=error.message)


@dataclass(frozen=True)
class ItemOutcome(Generic[T]):
    item_id: str
    value: T | None = None
    failure: ItemFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, item_id: str, value: T) -> ItemOutcome[T]:
        return cls(item_id=item_id, value=value)

    @classmethod
    def failed(cls, item_id: str, code: str, message: str) -> ItemOutcome[T]:
        return cls(item_id=item_id, failure=ItemFailure(item_id=item_id, code=code, message=message))


@dataclass
class BatchReport(Generic[T]):
    """Per-item results of a batch where one item failing never aborts the rest."""

    outcomes: list[ItemOutcome[T]] = field(default_factory=list)

    def add(self, outcome: ItemOutcome[T]) -> None:
        self.outcomes.append(outcome)

    @property
    def succeeded(self) -> list[T]:
        return [outcome.value for outcome in self.outcomes if outcome.value is not None]

    @property
    def failures(self) -> list[ItemFailure]:
        return [outcome.failure for outcome in self.outcomes if outcome.failure is not None]
