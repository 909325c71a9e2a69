"""Decide an issue's verified category from citizen input and the vision classifier."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from models import ISSUE_CATEGORIES, Issue

DEFAULT_CONFIDENCE_THRESHOLD = 0.6

# Checked in order; the first keyword found in the raw label wins.
# Compound labels ("traffic light", "manhole overflow") need the narrower groups first.
CATEGORY_KEYWORDS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("trash", "waste", "litter", "rubbish"), "garbage"),
    (("traffic", "signal", "sign"), "traffic"),
    (("leak", "flood", "pipe", "manhole", "sewer", "drain"), "water"),
    (("walkway", "pavement", "footpath", "sidewalk"), "sidewalk"),
    (("vandalism", "paint"), "graffiti"),
    (("light", "lamp"), "streetlight"),
    (("road", "hole", "crack"), "pothole"),
)


@dataclass
class ClassificationDecision:
    verified_category: str
    confidence: float
    needs_review: bool
    was_reclassified: bool = False
    reclassification_event: dict | None = None
    explanation: str | None = None
    error: str | None = None
    processing_status: str = "completed"
    decided_at: datetime = field(default_factory=datetime.utcnow)


def normalize_category(value: Any) -> str:
    """Map a free-form classifier label onto the shared category enumeration."""
    label = str(value or "").strip().lower()
    if label in ISSUE_CATEGORIES:
        return label
    for keywords, category in CATEGORY_KEYWORDS:
        if any(keyword in label for keyword in keywords):
            return category
    return "other"


def clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    if confidence != confidence:  # NaN
        return 0.0
    return max(0.0, min(1.0, confidence))


def decide_classification(
    citizen_category: str,
    classifier_output: Mapping[str, Any] | None,
    error: str | None = None,
    now: datetime | None = None,
    threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
) -> ClassificationDecision:
    """Pure decision over the classifier result; never raises for classifier problems."""
    now = now or datetime.utcnow()

    if error is not None or classifier_output is None:
        return ClassificationDecision(
            verified_category=citizen_category,
            confidence=0.0,
            needs_review=True,
            error=error or "Classifier returned no result",
            processing_status="failed",
            decided_at=now,
        )

    confidence = clamp_confidence(classifier_output.get("confidence"))
    suggested = normalize_category(classifier_output.get("category"))
    explanation = classifier_output.get("explanation")

    if confidence < threshold:
        # Low confidence never overrides the citizen's choice.
        return ClassificationDecision(
            verified_category=citizen_category,
            confidence=confidence,
            needs_review=True,
            explanation=explanation,
            decided_at=now,
        )

    if suggested != citizen_category:
        return ClassificationDecision(
            verified_category=suggested,
            confidence=confidence,
            needs_review=False,
            was_reclassified=True,
            reclassification_event={
                "from": citizen_category,
                "to": suggested,
                "confidence": confidence,
                "timestamp": now.isoformat(),
            },
            explanation=explanation,
            decided_at=now,
        )

    return ClassificationDecision(
        verified_category=citizen_category,
        confidence=confidence,
        needs_review=False,
        explanation=explanation,
        decided_at=now,
    )


def apply_classification(issue: Issue, decision: ClassificationDecision) -> bool:
    """Copy a decision onto an issue. First reclassification wins; returns False when skipped."""
    if issue.reclassification_event:
        return False
    issue.verified_category = decision.verified_category
    issue.confidence_score = decision.confidence
    issue.needs_review = decision.needs_review
    issue.was_reclassified = decision.was_reclassified
    issue.reclassification_event = decision.reclassification_event
    issue.ai_explanation = decision.explanation
    issue.ai_error = decision.error
    issue.ai_processing_status = decision.processing_status
    issue.processed_at = decision.decided_at
    return True
