"""Confidence scoring and the review gate.

Pure functions: no I/O, no clock. Header, totals and counterparty fields carry
legal weight on the e-invoice, so they count twice as much as line items when
computing the overall confidence.
"""

from collections.abc import Mapping

from pydantic import BaseModel

from services.domain.models import Direction
from services.review.validators import normalize_nip

DEFAULT_REVIEW_THRESHOLD = 0.80
HEADER_WEIGHT = 2.0
LINE_ITEM_WEIGHT = 1.0

MATCHED_DIRECTION_CONFIDENCE = 1.0
UNKNOWN_DIRECTION_CONFIDENCE = 0.5
# Float noise tolerance for the weighted mean
SCORE_EPSILON = 1e-9
DISPLAY_PLACES = 4


class ReviewDecision(BaseModel):
    overall_confidence: float
    direction: Direction
    direction_confidence: float
    requires_review: bool


class DirectionClassification(BaseModel):
    direction: Direction
    confidence: float
    rationale: str


def field_weight(field_name: str) -> float:
    if field_name.startswith("line_items"):
        return LINE_ITEM_WEIGHT
    return HEADER_WEIGHT


def score_confidence(field_confidence: Mapping[str, float | None]) -> float:
    """Weighted mean of per-field confidences (0-1).

    A field the extraction service could not determine (None) counts as 0.0.
    An empty map scores 0.0 so that it always lands in review. The result is
    not rounded; round only for display.
    """
    total_weight = 0.0
    weighted_sum = 0.0
    for field_name, confidence in field_confidence.items():
        weight = field_weight(field_name)
        total_weight += weight
        weighted_sum += weight * min(max(confidence or 0.0, 0.0), 1.0)
    if total_weight == 0:
        return 0.0
    return weighted_sum / total_weight


def requires_review(
    overall_confidence: float,
    direction: Direction,
    threshold: float = DEFAULT_REVIEW_THRESHOLD,
) -> bool:
    return overall_confidence < threshold - SCORE_EPSILON or direction == Direction.UNKNOWN


def classify_direction(
    seller_tax_id: str | None, buyer_tax_id: str | None, tenant_tax_id: str | None
) -> DirectionClassification:
    """Label an invoice OUTGOING or INCOMING by matching the tenant's own NIP.

    Whatever direction the extraction service may have guessed is ignored.
    """
    tenant = normalize_nip(tenant_tax_id)
    if tenant:
        if normalize_nip(seller_tax_id) == tenant:
            return DirectionClassification(
                direction=Direction.OUTGOING,
                confidence=MATCHED_DIRECTION_CONFIDENCE,
                rationale="Seller NIP matches the tenant NIP",
            )
        if normalize_nip(buyer_tax_id) == tenant:
            return DirectionClassification(
                direction=Direction.INCOMING,
                confidence=MATCHED_DIRECTION_CONFIDENCE,
                rationale="Buyer NIP matches the tenant NIP",
            )
    return DirectionClassification(
        direction=Direction.UNKNOWN,
        confidence=UNKNOWN_DIRECTION_CONFIDENCE,
        rationale="Neither seller nor buyer NIP matches the tenant NIP",
    )


def evaluate(
    field_confidence: Mapping[str, float | None],
    direction: Direction,
    direction_confidence: float | None = None,
    threshold: float = DEFAULT_REVIEW_THRESHOLD,
) -> ReviewDecision:
    """Score the fields and apply the review gate.

    The gate sees the unrounded score; the decision carries it rounded.
    """
    overall = score_confidence(field_confidence)
    return ReviewDecision(
        overall_confidence=round(overall, DISPLAY_PLACES),
        direction=direction,
        direction_confidence=direction_confidence or 0.0,
        requires_review=requires_review(overall, direction, threshold),
    )
