"""Unit tests for confidence scoring, direction classification and the review gate."""

import pytest
from fakes import BUYER_NIP, OTHER_NIP, SELLER_NIP

from services.domain.models import Direction
from services.scoring.confidence import (
    classify_direction,
    evaluate,
    requires_review,
    score_confidence,
)


class TestScoreConfidence:
    def test_uniform_confidence(self) -> None:
        fields = {"invoice_number": 0.9, "seller.tax_id": 0.9, "line_items.0": 0.9}
        assert score_confidence(fields) == pytest.approx(0.9)

    def test_header_fields_weigh_double(self) -> None:
        # (2 * 1.0 + 1 * 0.4) / 3
        assert score_confidence({"invoice_number": 1.0, "line_items.0": 0.4}) == pytest.approx(
            0.8
        )

    def test_missing_value_counts_as_zero(self) -> None:
        assert score_confidence({"invoice_number": 1.0, "issue_date": None}) == pytest.approx(0.5)

    def test_empty_map_scores_zero(self) -> None:
        assert score_confidence({}) == 0.0

    def test_out_of_range_values_are_clamped(self) -> None:
        assert score_confidence({"invoice_number": 1.7}) == 1.0

    def test_score_is_not_rounded(self) -> None:
        assert score_confidence({"invoice_number": 0.79996}) == pytest.approx(0.79996)


class TestClassifyDirection:
    def test_seller_match_is_outgoing(self) -> None:
        result = classify_direction("526-025-02-74", BUYER_NIP, SELLER_NIP)
        assert result.direction == Direction.OUTGOING
        assert result.confidence == 1.0

    def test_buyer_match_is_incoming(self) -> None:
        result = classify_direction(OTHER_NIP, BUYER_NIP, "PL" + BUYER_NIP)
        assert result.direction == Direction.INCOMING

    def test_no_match_is_unknown(self) -> None:
        result = classify_direction(OTHER_NIP, BUYER_NIP, SELLER_NIP)
        assert result.direction == Direction.UNKNOWN
        assert result.confidence == 0.5

    def test_no_tenant_nip_is_unknown(self) -> None:
        assert classify_direction(SELLER_NIP, BUYER_NIP, None).direction == Direction.UNKNOWN


class TestReviewGate:
    def test_below_threshold_requires_review(self) -> None:
        assert requires_review(0.79, Direction.OUTGOING, 0.80) is True

    def test_at_threshold_passes(self) -> None:
        assert requires_review(0.80, Direction.OUTGOING, 0.80) is False

    def test_unknown_direction_always_requires_review(self) -> None:
        assert requires_review(0.99, Direction.UNKNOWN, 0.80) is True

    def test_score_just_below_threshold_requires_review(self) -> None:
        """Should gate on the exact score, not the four-place display value."""
        decision = evaluate({"invoice_number": 0.79996}, Direction.OUTGOING, 1.0)

        assert decision.overall_confidence == 0.8
        assert decision.requires_review is True

    def test_weighted_mean_at_threshold_passes(self) -> None:
        # (2 * 1.0 + 1 * 0.4) / 3, which floating point may put a hair under 0.8
        decision = evaluate({"invoice_number": 1.0, "line_items.0": 0.4}, Direction.INCOMING)
        assert decision.requires_review is False

    def test_evaluate_combines_score_and_direction(self) -> None:
        classification = classify_direction(SELLER_NIP, BUYER_NIP, SELLER_NIP)

        decision = evaluate(
            {"invoice_number": 0.55, "seller.tax_id": 0.55},
            classification.direction,
            classification.confidence,
        )

        assert decision.overall_confidence == pytest.approx(0.55)
        assert decision.direction == Direction.OUTGOING
        assert decision.direction_confidence == 1.0
        assert decision.requires_review is True
