"""Nearest-neighbour matching of a query descriptor against the gallery.

Confidence is ``max(0, 1 - d)`` where ``d`` is the Euclidean distance in
descriptor space. Every candidate is scored with the same formula in a full
linear scan; confidence is not monotonic in gallery order, so there is no
early exit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Sequence

    from faceguard.gallery.records import FaceRecord
    from faceguard.ml.embedding import Descriptor

logger = logging.getLogger(__name__)


class RejectionReason(StrEnum):
    EMPTY_GALLERY = "empty_gallery"
    BELOW_THRESHOLD = "below_threshold"
    NOT_AUTHORIZED = "not_authorized"


@dataclass(frozen=True)
class AuthenticationResult:
    """Outcome of one match.

    ``matched`` is only set when ``confidence >= threshold_used`` and, with the
    authorized-only filter applied, the record is authorized. ``best_candidate``
    is the top-scoring record even when it was rejected.
    """

    matched: FaceRecord | None
    confidence: float
    threshold_used: float
    authorized_only_filter_applied: bool
    best_candidate: FaceRecord | None = None
    rejection: RejectionReason | None = None

    @property
    def is_match(self) -> bool:
        return self.matched is not None


@dataclass
class RecognitionConfig:
    """Operator-tunable match policy, read by flows at confirmation time."""

    confidence_threshold: float = 0.9
    authorized_only: bool = True

    def __post_init__(self) -> None:
        _check_threshold(self.confidence_threshold)

    def update(self, *, confidence_threshold: float | None = None, authorized_only: bool | None = None) -> None:
        if confidence_threshold is not None:
            _check_threshold(confidence_threshold)
            self.confidence_threshold = confidence_threshold
        if authorized_only is not None:
            self.authorized_only = authorized_only


def _check_threshold(threshold: float) -> None:
    if not 0.0 <= threshold <= 1.0:
        raise ValueError(f"Threshold must be within [0, 1], got {threshold}")


def euclidean_distance(a: Descriptor, b: Descriptor) -> float:
    diff = a.vector.astype(np.float64) - b.vector.astype(np.float64)
    return float(np.sqrt(np.dot(diff, diff)))


def confidence(a: Descriptor, b: Descriptor) -> float:
    """Distance-derived similarity in [0, 1]; 0.0 for incomparable descriptors."""
    if not a.comparable_with(b):
        return 0.0
    return min(1.0, max(0.0, 1.0 - euclidean_distance(a, b)))


class Matcher:
    def match(
        self,
        query: Descriptor,
        gallery: Sequence[FaceRecord],
        threshold: float,
        authorized_only: bool,
    ) -> AuthenticationResult:
        _check_threshold(threshold)

        best: FaceRecord | None = None
        best_confidence = 0.0
        incomparable = 0
        for candidate in gallery:
            if not query.comparable_with(candidate.descriptor):
                incomparable += 1
                continue
            score = confidence(query, candidate.descriptor)
            # Strict comparison keeps the first record in gallery order on ties.
            if best is None or score > best_confidence:
                best, best_confidence = candidate, score

        if incomparable:
            logger.debug("%d gallery record(s) not comparable with %s query", incomparable, query.source)

        if not gallery:
            rejection: RejectionReason | None = RejectionReason.EMPTY_GALLERY
        elif best is None:
            rejection = RejectionReason.BELOW_THRESHOLD
        elif best_confidence < threshold:
            rejection = RejectionReason.BELOW_THRESHOLD
        elif authorized_only and not best.authorized:
            rejection = RejectionReason.NOT_AUTHORIZED
        else:
            rejection = None

        logger.debug(
            "Best candidate %s at %.4f (threshold %.2f, authorized_only=%s): %s",
            best.display_name if best else None,
            best_confidence,
            threshold,
            authorized_only,
            rejection or "match",
        )
        return AuthenticationResult(
            matched=best if rejection is None else None,
            confidence=best_confidence,
            threshold_used=threshold,
            authorized_only_filter_applied=authorized_only,
            best_candidate=best,
            rejection=rejection,
        )
