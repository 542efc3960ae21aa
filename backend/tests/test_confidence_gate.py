"""Confidence gate: threshold comparison, per-field policy, resulting job status."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from docrecon.schemas.extraction import JobStatus
from docrecon.services.confidence_gate import (
    AutoInsertPolicy,
    count_high_confidence,
    gate_items,
    meets_threshold,
    should_auto_insert,
)


def _item(field_path: str, confidence: float):
    return SimpleNamespace(field_path=field_path, confidence_score=confidence)


def test_meets_threshold_is_inclusive():
    assert meets_threshold(0.8, 0.8) is True
    assert meets_threshold(0.79, 0.8) is False
    assert meets_threshold(1.0, 0.0) is True


@pytest.mark.parametrize("confidence,threshold", [(1.2, 0.5), (-0.1, 0.5), (0.5, 1.5)])
def test_meets_threshold_rejects_out_of_range(confidence, threshold):
    with pytest.raises(ValueError):
        meets_threshold(confidence, threshold)


def test_all_items_above_threshold_completes_job():
    decision = gate_items([_item("a", 0.95), _item("b", 0.81)], 0.8)
    assert len(decision.auto_promote) == 2
    assert decision.needs_review == ()
    assert decision.resulting_status == JobStatus.COMPLETED


def test_one_low_item_sends_job_to_review_but_promotes_the_rest():
    decision = gate_items([_item("a", 0.95), _item("b", 0.6)], 0.8)
    assert [i.field_path for i in decision.auto_promote] == ["a"]
    assert [i.field_path for i in decision.needs_review] == ["b"]
    assert decision.resulting_status == JobStatus.NEEDS_REVIEW


def test_no_items_is_vacuously_complete():
    assert gate_items([], 0.8).resulting_status == JobStatus.COMPLETED


def test_review_only_field_never_auto_inserts():
    policy = AutoInsertPolicy(review_only_fields=("supplier.cnpj", "waste.*.quantity"))

    assert should_auto_insert(_item("supplier.cnpj", 0.99), 0.8, policy) is False
    assert should_auto_insert(_item("waste.january.quantity", 0.99), 0.8, policy) is False
    assert should_auto_insert(_item("supplier.name", 0.99), 0.8, policy) is True

    decision = gate_items([_item("supplier.cnpj", 0.99)], 0.8, policy)
    assert decision.resulting_status == JobStatus.NEEDS_REVIEW


def test_policy_from_settings(monkeypatch):
    from docrecon.core.config import get_settings

    monkeypatch.setenv("AUTO_INSERT_REVIEW_FIELDS", "supplier.cnpj, totals.*")
    get_settings.cache_clear()

    policy = AutoInsertPolicy.from_settings(get_settings())
    assert policy.review_only_fields == ("supplier.cnpj", "totals.*")
    assert policy.is_eligible("totals.net") is False


def test_count_high_confidence():
    items = [_item("a", 0.9), _item("b", 0.8), _item("c", 0.2)]
    assert count_high_confidence(items, 0.8) == 2
