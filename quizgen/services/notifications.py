import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from quizgen.models.schemas import FeedbackItem

logger = logging.getLogger(__name__)


@dataclass
class SubmissionScored:
    user_id: int
    username: str
    email: Optional[str]
    quiz_id: int
    quiz_title: str
    submission_id: int
    score: float
    total_points: int
    is_retry: bool
    feedback: List[FeedbackItem] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)


class NotificationChannel(ABC):
    """Receives scored submissions; delivery and formatting are up to the channel."""

    @abstractmethod
    def submission_scored(self, event: SubmissionScored) -> None:
        ...


class LoggingNotificationChannel(NotificationChannel):
    def submission_scored(self, event: SubmissionScored) -> None:
        correct = sum(1 for f in event.feedback if f.is_correct)
        logger.info(
            f"Submission {event.submission_id} scored for {event.username}: "
            f"{event.quiz_title} {event.score:.2f}% ({correct}/{event.total_points})"
            f"{' [retry]' if event.is_retry else ''}"
        )
