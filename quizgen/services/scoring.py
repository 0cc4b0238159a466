"""Answer evaluation, aggregate score and the running-average update rule."""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from quizgen.core.errors import ValidationError
from quizgen.models.orm import Question
from quizgen.models.schemas import FeedbackItem


@dataclass
class ScoreResult:
    score: float
    total_points: int
    correct_count: int
    feedback: List[FeedbackItem] = field(default_factory=list)

    @property
    def incorrect_positions(self) -> List[int]:
        return [i for i, f in enumerate(self.feedback) if not f.is_correct]


def score_answers(questions: Sequence[Question], answers: Sequence[Optional[str]]) -> ScoreResult:
    """Score an index-aligned answer list against questions in order-number order.

    Correctness is exact, case-sensitive equality with the stored answer. The
    score is the percentage of correct answers; per-question point values are
    not weighted, and total_points is the question count.
    """
    if len(questions) != len(answers):
        raise ValidationError(
            f"Number of answers ({len(answers)}) does not match number of questions ({len(questions)})"
        )
    if not questions:
        raise ValidationError("Cannot score a quiz without questions")

    feedback: List[FeedbackItem] = []
    correct = 0
    for question, answer in zip(questions, answers):
        is_correct = answer is not None and answer == question.correct_answer
        if is_correct:
            correct += 1
        feedback.append(FeedbackItem(
            question_id=question.id,
            user_answer=answer,
            correct_answer=question.correct_answer,
            is_correct=is_correct,
            explanation=question.explanation or "",
        ))

    total = len(questions)
    return ScoreResult(score=correct / total * 100, total_points=total, correct_count=correct, feedback=feedback)


def update_running_average(old_avg: float, old_count: int, new_score: float) -> Tuple[float, int]:
    """Incremental mean; the aggregate upsert applies the same formula in SQL."""
    new_count = old_count + 1
    return (old_avg * old_count + new_score) / new_count, new_count
