"""Learning from decision outcomes: episodes, feedback and patterns."""

from abo.learning.engine import LearningModule, detect_preferences
from abo.learning.outcomes import OutcomeDetector
from abo.learning.scoring import sample_weight, wilson_lower_bound

__all__ = [
    "LearningModule",
    "OutcomeDetector",
    "detect_preferences",
    "sample_weight",
    "wilson_lower_bound",
]
