"""Confidence gate: decides auto-insertion vs. human reconciliation per staged item.

Pure functions only. Persisting the outcome is the invoker's job.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Any, Iterable, Sequence

from docrecon.schemas.extraction import JobStatus


@dataclass(frozen=True)
class AutoInsertPolicy:
    """Per-field eligibility for automatic promotion.

    ``review_only_fields`` holds glob patterns over ``field_path``
    (e.g. ``"supplier.cnpj"``, ``"waste.*.quantity"``). A matching field always
    goes to reconciliation, whatever its confidence.
    """

    review_only_fields: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_settings(cls, settings: Any) -> "AutoInsertPolicy":
        return cls(review_only_fields=tuple(getattr(settings, "auto_insert_review_fields", []) or ()))

    def is_eligible(self, field_path: str) -> bool:
        return not any(fnmatchcase(field_path, pattern) for pattern in self.review_only_fields)


@dataclass(frozen=True)
class GateDecision:
    auto_promote: tuple[Any, ...]
    needs_review: tuple[Any, ...]

    @property
    def resulting_status(self) -> JobStatus:
        # Completed only when nothing is left for a human
        if self.needs_review:
            return JobStatus.NEEDS_REVIEW
        return JobStatus.COMPLETED


def _check_unit_interval(name: str, value: float) -> float:
    value = float(value)
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be within [0, 1], got {value}")
    return value


def meets_threshold(confidence_score: float, threshold: float) -> bool:
    return _check_unit_interval("confidence_score", confidence_score) >= _check_unit_interval(
        "auto_insert_threshold", threshold
    )


def should_auto_insert(item: Any, threshold: float, policy: AutoInsertPolicy | None = None) -> bool:
    policy = policy or AutoInsertPolicy()
    return meets_threshold(item.confidence_score, threshold) and policy.is_eligible(item.field_path)


def gate_items(
    items: Iterable[Any],
    threshold: float,
    policy: AutoInsertPolicy | None = None,
) -> GateDecision:
    """Split *items* (anything with ``confidence_score`` and ``field_path``)."""
    policy = policy or AutoInsertPolicy()
    auto: list[Any] = []
    review: list[Any] = []
    for item in items:
        if should_auto_insert(item, threshold, policy):
            auto.append(item)
        else:
            review.append(item)
    return GateDecision(auto_promote=tuple(auto), needs_review=tuple(review))


def count_high_confidence(items: Sequence[Any], threshold: float) -> int:
    return sum(1 for item in items if meets_threshold(item.confidence_score, threshold))
