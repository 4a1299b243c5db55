"""Unit tests for consolidation, confidence scoring and conflict identification."""

from __future__ import annotations

from typing import Any

import pytest

from invoice_reader.modules.extraction.agent_schemas import AgentInvocationResult
from invoice_reader.modules.extraction.agents.merger import (
    MergerAgent,
    apply_verified_data,
    consolidate,
    identify_conflicts,
    is_empty_value,
    missing_critical_fields,
    overall_confidence,
    round_half_up,
)


def _result(
    name: str,
    data: dict[str, Any],
    confidence: int,
    specs: int = 1,
    *,
    conflicts: list[str] | None = None,
    succeeded: bool = True,
) -> AgentInvocationResult:
    return AgentInvocationResult(
        agent_name=name,
        extracted_data=data,
        confidence=confidence,
        specializations=[f"spec_{i}" for i in range(specs)],
        conflicts=conflicts or [],
        succeeded=succeeded,
    )


# ---------------------------------------------------------------------------
# Merge rule
# ---------------------------------------------------------------------------


def test_low_confidence_never_overwrites_existing_value() -> None:
    base = {"totalAmount": 30250.0}
    merged = consolidate([_result("late", {"totalAmount": 99.0}, 75)], base)
    assert merged["totalAmount"] == 30250.0


def test_high_confidence_fills_missing_field() -> None:
    base = {"totalAmount": None}
    merged = consolidate([_result("late", {"totalAmount": 30250.0}, 76)], base)
    assert merged["totalAmount"] == 30250.0


def test_high_confidence_overrides_existing_value() -> None:
    merged = consolidate(
        [_result("a", {"invoiceNumber": "0001-1"}, 60), _result("b", {"invoiceNumber": "0001-2"}, 90)]
    )
    assert merged["invoiceNumber"] == "0001-2"


def test_low_confidence_fills_absent_field() -> None:
    merged = consolidate([_result("a", {"currency": "ARS"}, 30)], {"totalAmount": 10})
    assert merged == {"totalAmount": 10, "currency": "ARS"}


@pytest.mark.parametrize("empty", [None, "", "   ", [], {}])
def test_empty_values_never_write(empty: Any) -> None:
    merged = consolidate([_result("a", {"providerName": empty}, 99)], {"providerName": "ACME"})
    assert merged["providerName"] == "ACME"


def test_consolidate_does_not_mutate_base() -> None:
    base = {"lineItems": [{"description": "x"}]}
    merged = consolidate([_result("a", {"currency": "USD"}, 90)], base)
    merged["lineItems"].append({"description": "y"})
    assert base == {"lineItems": [{"description": "x"}]}


def test_merger_agent_uses_its_threshold() -> None:
    merger = MergerAgent(acceptance_threshold=90)
    merged = merger.merge([_result("b", {"currency": "EUR"}, 85)], base={"currency": "USD"})
    assert merged["currency"] == "USD"


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def test_overall_confidence_weights_by_specialization_count() -> None:
    results = [
        _result("classification_agent", {}, 90, specs=3),
        _result("structural_extraction_agent", {}, 90, specs=4),
        _result("metadata_agent", {}, 60, specs=2),
    ]
    # (90*3 + 90*4 + 60*2) / 9 = 83.33
    assert overall_confidence(results) == 83


def test_overall_confidence_rounds_half_up() -> None:
    results = [_result("a", {}, 50), _result("b", {}, 51)]
    assert overall_confidence(results) == 51
    assert round_half_up(82.5) == 83


def test_overall_confidence_of_nothing_is_zero() -> None:
    assert overall_confidence([]) == 0


def test_overall_confidence_stays_in_bounds() -> None:
    results = [_result("a", {}, 100, specs=7), _result("b", {}, 0, specs=1)]
    assert 0 <= overall_confidence(results) <= 100


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


def test_identify_conflicts_reports_markers_and_disagreements() -> None:
    results = [
        _result("classification_agent", {"documentOrigin": "argentina"}, 90),
        _result("metadata_agent", {"documentOrigin": "international"}, 60,
                conflicts=["metadata_agent: weak signal"]),
    ]
    conflicts = identify_conflicts(results)
    assert conflicts[0] == "metadata_agent: weak signal"
    assert conflicts[1] == (
        "Disagreement on documentOrigin: 'argentina' (classification_agent) "
        "vs 'international' (metadata_agent)"
    )


def test_identify_conflicts_ignores_equivalent_values() -> None:
    results = [
        _result("a", {"totalAmount": 30250, "currency": "ARS"}, 90),
        _result("b", {"totalAmount": 30250.0, "currency": "ars "}, 90),
    ]
    assert identify_conflicts(results) == []


def test_identify_conflicts_handles_integers_beyond_float_range() -> None:
    huge = 10**400
    results = [
        _result("a", {"totalAmount": huge, "subtotal": huge}, 90),
        _result("b", {"totalAmount": 5, "subtotal": huge}, 90),
    ]
    conflicts = identify_conflicts(results)
    assert len(conflicts) == 1
    assert conflicts[0].startswith("Disagreement on totalAmount")


def test_identify_conflicts_skips_failed_agents_and_lists() -> None:
    results = [
        _result("a", {"lineItems": [{"description": "x"}]}, 90),
        _result("b", {"lineItems": [{"description": "y"}]}, 90),
        _result("c", {"invoiceNumber": "1"}, 30, succeeded=False),
        _result("d", {"invoiceNumber": "2"}, 90),
    ]
    assert identify_conflicts(results) == []


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_missing_critical_fields() -> None:
    data = {"totalAmount": 10.0, "invoiceNumber": "", "providerName": "ACME"}
    assert missing_critical_fields(data) == ["invoiceNumber", "customerName"]


def test_apply_verified_data_overrides_unconditionally_but_skips_empty() -> None:
    base = {"totalAmount": 100.0, "currency": "ARS"}
    verified = {"totalAmount": 121.0, "currency": None, "customerName": "Norte SRL"}
    assert apply_verified_data(base, verified) == {
        "totalAmount": 121.0,
        "currency": "ARS",
        "customerName": "Norte SRL",
    }
    assert apply_verified_data(base, None) == base


def test_is_empty_value() -> None:
    assert is_empty_value(None)
    assert is_empty_value(" ")
    assert not is_empty_value(0)
    assert not is_empty_value(False)
