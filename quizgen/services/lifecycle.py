"""
Quiz lifecycle: generation, submission, retry and the cached read paths.

Every operation is split into short units of work. Oracle calls run between
them, never inside an open transaction. The submission write (insert plus
aggregate upsert) is one atomic unit.
"""
import logging
from typing import Any, List, Optional, Sequence

from pydantic import ValidationError as SchemaError
from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session, selectinload, sessionmaker

from quizgen.core.cache import CacheCoordinator
from quizgen.core.config import Settings, settings
from quizgen.core.database import SessionLocal, session_scope
from quizgen.core.errors import GenerationFailure, NotFound, ValidationError
from quizgen.models.orm import PerformanceAggregate, Question, Quiz, Submission, User, utcnow
from quizgen.models.schemas import (
    HistoryFilters, HistoryItem, HistoryPage, Pagination, PerformanceView, QuestionDraft, QuestionView,
    QuizView, SubmissionResult,
)
from quizgen.services.adaptive import DEFAULT_DIFFICULTY, DIFFICULTIES, next_difficulty
from quizgen.services.ai_service import AIService
from quizgen.services.notifications import LoggingNotificationChannel, NotificationChannel, SubmissionScored
from quizgen.services.scoring import score_answers, update_running_average

logger = logging.getLogger(__name__)

FALLBACK_SUGGESTIONS = [
    "Review the topics you found most challenging.",
    "Practice more problems to strengthen your understanding.",
]


def quiz_view(quiz: Quiz) -> QuizView:
    """Public projection of a quiz; answers and explanations stay server-side."""
    return QuizView(
        id=quiz.id,
        user_id=quiz.user_id,
        title=quiz.title,
        subject=quiz.subject,
        grade_level=quiz.grade_level,
        difficulty_level=quiz.difficulty_level,
        total_questions=quiz.total_questions,
        created_at=quiz.created_at,
        questions=[
            QuestionView(
                id=q.id,
                question_text=q.question_text,
                question_type=q.question_type,
                options=list(q.options),
                points=q.points,
                order_number=q.order_number,
            )
            for q in sorted(quiz.questions, key=lambda q: q.order_number)
        ],
    )


def validate_drafts(drafts: Any, count: int) -> List[QuestionDraft]:
    if not isinstance(drafts, list):
        raise GenerationFailure("Generated content is not a list of questions")
    if len(drafts) != count:
        raise GenerationFailure(f"Expected {count} questions, got {len(drafts)}")
    try:
        return [QuestionDraft.model_validate(d) for d in drafts]
    except SchemaError as e:
        raise GenerationFailure(f"Malformed question draft: {e.error_count()} error(s)") from e


def upsert_performance(db: Session, user_id: int, subject: str, grade_level: str, score: float, difficulty: str) -> None:
    """Fold one score into the (user, subject, grade) running average.

    One INSERT .. ON CONFLICT DO UPDATE; the mean is computed from the row's
    current values inside the statement.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        _upsert_performance_locked(db, user_id, subject, grade_level, score, difficulty)
        return

    table = PerformanceAggregate.__table__
    stmt = insert(table).values(
        user_id=user_id,
        subject=subject,
        grade_level=grade_level,
        avg_score=score,
        total_quizzes=1,
        last_difficulty=difficulty,
        updated_at=utcnow(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.user_id, table.c.subject, table.c.grade_level],
        set_={
            "avg_score": (table.c.avg_score * table.c.total_quizzes + stmt.excluded.avg_score) / (table.c.total_quizzes + 1),
            "total_quizzes": table.c.total_quizzes + 1,
            "last_difficulty": stmt.excluded.last_difficulty,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    db.execute(stmt)


def _upsert_performance_locked(db: Session, user_id: int, subject: str, grade_level: str, score: float, difficulty: str) -> None:
    perf = db.scalar(
        select(PerformanceAggregate)
        .where(
            PerformanceAggregate.user_id == user_id,
            PerformanceAggregate.subject == subject,
            PerformanceAggregate.grade_level == grade_level,
        )
        .with_for_update()
    )
    if perf is None:
        db.add(PerformanceAggregate(
            user_id=user_id, subject=subject, grade_level=grade_level,
            avg_score=score, total_quizzes=1, last_difficulty=difficulty,
        ))
        return
    perf.avg_score, perf.total_quizzes = update_running_average(perf.avg_score, perf.total_quizzes, score)
    perf.last_difficulty = difficulty
    perf.updated_at = utcnow()


class QuizLifecycleManager:
    def __init__(
        self,
        cache: CacheCoordinator,
        ai: AIService,
        notifier: Optional[NotificationChannel] = None,
        session_factory: sessionmaker = SessionLocal,
        cfg: Settings = settings,
    ):
        self.cache = cache
        self.ai = ai
        self.notifier = notifier or LoggingNotificationChannel()
        self.session_factory = session_factory
        self.cfg = cfg

    # ---------------------------------------------------------------- generate

    def generate(
        self,
        user_id: int,
        subject: str,
        grade_level: str,
        count: Optional[int] = None,
        difficulty: Optional[str] = None,
    ) -> QuizView:
        subject = (subject or "").strip()
        grade_level = (grade_level or "").strip()
        count = self.cfg.QUIZ_DEFAULT_QUESTIONS if count is None else count
        if not 2 <= len(subject) <= 100:
            raise ValidationError("subject must be between 2 and 100 characters")
        if not grade_level:
            raise ValidationError("gradeLevel is required")
        if not self.cfg.QUIZ_MIN_QUESTIONS <= count <= self.cfg.QUIZ_MAX_QUESTIONS:
            raise ValidationError(
                f"numberOfQuestions must be between {self.cfg.QUIZ_MIN_QUESTIONS} and {self.cfg.QUIZ_MAX_QUESTIONS}"
            )
        if difficulty is not None and difficulty not in DIFFICULTIES:
            raise ValidationError(f"difficulty must be one of {', '.join(DIFFICULTIES)}")

        resolved = difficulty or self._adaptive_difficulty(user_id, subject, grade_level)
        drafts = validate_drafts(self.ai.generate_questions(subject, grade_level, count, resolved), count)

        with session_scope(self.session_factory) as db:
            quiz = Quiz(
                user_id=user_id,
                title=f"{subject} Quiz - {grade_level}",
                subject=subject,
                grade_level=grade_level,
                difficulty_level=resolved,
                total_questions=len(drafts),
            )
            quiz.questions = [
                Question(
                    question_text=d.question,
                    question_type="multiple_choice",
                    options=d.options,
                    correct_answer=d.correctAnswer,
                    explanation=d.explanation,
                    points=1,
                    order_number=position,
                )
                for position, d in enumerate(drafts, start=1)
            ]
            db.add(quiz)
            db.flush()
            view = quiz_view(quiz)

        self.cache.put_quiz(view.id, view.model_dump(mode="json"))
        self.cache.invalidate_history(user_id)
        logger.info(f"Generated quiz {view.id} ({subject}/{grade_level}, {resolved}, {count} questions) for user {user_id}")
        return view

    def _adaptive_difficulty(self, user_id: int, subject: str, grade_level: str) -> str:
        with session_scope(self.session_factory) as db:
            perf = self._find_performance(db, user_id, subject, grade_level)
            if perf is None:
                return DEFAULT_DIFFICULTY
            resolved = next_difficulty(perf.avg_score, perf.last_difficulty)
        logger.debug(f"Adaptive difficulty for user {user_id} on {subject}/{grade_level}: {resolved}")
        return resolved

    # ---------------------------------------------------------- submit / retry

    def submit(self, user_id: int, quiz_id: int, answers: Sequence[Optional[str]], time_taken: Optional[int] = None) -> SubmissionResult:
        return self._record_attempt(user_id, quiz_id, answers, time_taken, counts_toward_aggregate=True)

    def retry(self, user_id: int, quiz_id: int, answers: Sequence[Optional[str]], time_taken: Optional[int] = None) -> SubmissionResult:
        # Retries measure improvement; they never move the performance aggregate
        return self._record_attempt(user_id, quiz_id, answers, time_taken, counts_toward_aggregate=False)

    def _record_attempt(
        self,
        user_id: int,
        quiz_id: int,
        answers: Sequence[Optional[str]],
        time_taken: Optional[int],
        *,
        counts_toward_aggregate: bool,
    ) -> SubmissionResult:
        if time_taken is not None and time_taken < 0:
            raise ValidationError("timeTaken must be non-negative")

        with session_scope(self.session_factory) as db:
            quiz = self._load_owned_quiz(db, user_id, quiz_id)
            original_id = None
            if not counts_toward_aggregate:
                original_id = db.scalar(
                    select(Submission.id)
                    .where(Submission.quiz_id == quiz_id, Submission.user_id == user_id, Submission.is_retry.is_(False))
                    .order_by(Submission.submitted_at.desc(), Submission.id.desc())
                    .limit(1)
                )
                if original_id is None:
                    raise NotFound("Original quiz submission not found")
            user = db.get(User, user_id)
            questions = list(quiz.questions)

        result = score_answers(questions, answers)
        incorrect = [questions[i] for i in result.incorrect_positions]
        suggestions = self._suggestions(quiz, incorrect, result.score)

        with session_scope(self.session_factory) as db:
            submission = Submission(
                quiz_id=quiz.id,
                user_id=user_id,
                answers=list(answers),
                score=result.score,
                total_points=result.total_points,
                feedback=[f.model_dump() for f in result.feedback],
                ai_suggestions=suggestions,
                time_taken=time_taken,
                is_retry=not counts_toward_aggregate,
                original_submission_id=original_id,
            )
            db.add(submission)
            db.flush()
            if counts_toward_aggregate:
                upsert_performance(db, user_id, quiz.subject, quiz.grade_level, result.score, quiz.difficulty_level)
            submission_id = submission.id

        self.cache.invalidate_user(user_id)

        outcome = SubmissionResult(
            submission_id=submission_id,
            quiz_id=quiz.id,
            score=result.score,
            total_points=result.total_points,
            feedback=result.feedback,
            suggestions=suggestions,
            is_retry=not counts_toward_aggregate,
            original_submission_id=original_id,
        )
        logger.info(
            f"{'Retry' if outcome.is_retry else 'Submission'} {submission_id} on quiz {quiz.id} "
            f"by user {user_id}: {result.correct_count}/{result.total_points}"
        )
        self._notify(user, quiz, outcome)
        return outcome

    def _suggestions(self, quiz: Quiz, incorrect: List[Question], score: float) -> List[str]:
        try:
            suggestions = self.ai.generate_suggestions(quiz.subject, quiz.grade_level, incorrect, score, FALLBACK_SUGGESTIONS)
        except Exception:
            logger.warning("Suggestion oracle failed, using fallback suggestions", exc_info=True)
            return list(FALLBACK_SUGGESTIONS)
        if not isinstance(suggestions, list) or len(suggestions) != 2 or not all(isinstance(s, str) for s in suggestions):
            return list(FALLBACK_SUGGESTIONS)
        return suggestions

    def _notify(self, user: Optional[User], quiz: Quiz, outcome: SubmissionResult) -> None:
        event = SubmissionScored(
            user_id=quiz.user_id if user is None else user.id,
            username=user.username if user else "",
            email=user.email if user else None,
            quiz_id=quiz.id,
            quiz_title=quiz.title,
            submission_id=outcome.submission_id,
            score=outcome.score,
            total_points=outcome.total_points,
            is_retry=outcome.is_retry,
            feedback=outcome.feedback,
            suggestions=outcome.suggestions,
        )
        try:
            self.notifier.submission_scored(event)
        except Exception:
            logger.warning(f"Notification for submission {outcome.submission_id} failed", exc_info=True)

    # ------------------------------------------------------------------ reads

    def get_quiz(self, user_id: int, quiz_id: int) -> QuizView:
        cached = self.cache.get_quiz(quiz_id)
        if cached and cached.get("user_id") == user_id:
            view = QuizView.model_validate(cached)
            view.cached = True
            return view

        with session_scope(self.session_factory) as db:
            view = quiz_view(self._load_owned_quiz(db, user_id, quiz_id))
        self.cache.put_quiz(quiz_id, view.model_dump(mode="json"))
        return view

    def history(self, user_id: int, filters: HistoryFilters) -> HistoryPage:
        token = filters.cache_token()
        cached = self.cache.get_history(user_id, token)
        if cached:
            page = HistoryPage.model_validate(cached)
            page.cached = True
            return page

        latest = (
            select(
                Submission.id.label("submission_id"),
                Submission.quiz_id,
                Submission.score,
                Submission.submitted_at,
                Submission.is_retry,
                func.row_number().over(
                    partition_by=Submission.quiz_id,
                    order_by=(Submission.submitted_at.desc(), Submission.id.desc()),
                ).label("rn"),
            )
            .where(Submission.user_id == user_id)
            .subquery()
        )
        stmt = (
            select(
                Quiz.id, Quiz.title, Quiz.subject, Quiz.grade_level, Quiz.difficulty_level,
                Quiz.total_questions, Quiz.created_at,
                latest.c.submission_id, latest.c.score, latest.c.submitted_at, latest.c.is_retry,
            )
            .outerjoin(latest, and_(latest.c.quiz_id == Quiz.id, latest.c.rn == 1))
            .where(Quiz.user_id == user_id)
        )
        if filters.grade:
            stmt = stmt.where(Quiz.grade_level == filters.grade)
        if filters.subject:
            stmt = stmt.where(Quiz.subject.ilike(f"%{filters.subject}%"))
        if filters.min_score is not None:
            stmt = stmt.where(latest.c.score >= filters.min_score)
        if filters.max_score is not None:
            stmt = stmt.where(latest.c.score <= filters.max_score)
        if filters.start_date is not None:
            stmt = stmt.where(Quiz.created_at >= filters.start_date)
        if filters.end_date is not None:
            stmt = stmt.where(Quiz.created_at <= filters.end_date)

        with session_scope(self.session_factory) as db:
            total = db.scalar(select(func.count()).select_from(stmt.subquery()))
            rows = db.execute(
                stmt.order_by(Quiz.created_at.desc(), Quiz.id.desc())
                .limit(filters.limit)
                .offset((filters.page - 1) * filters.limit)
            ).all()

        page = HistoryPage(
            quizzes=[HistoryItem.model_validate(dict(r._mapping)) for r in rows],
            pagination=Pagination(page=filters.page, limit=filters.limit, total=total or 0),
        )
        self.cache.put_history(user_id, token, page.model_dump(mode="json"))
        return page

    def performance(self, user_id: int, subject: str, grade_level: str) -> PerformanceView:
        cached = self.cache.get_performance(user_id, subject, grade_level)
        if cached:
            view = PerformanceView.model_validate(cached)
            view.cached = True
            return view

        with session_scope(self.session_factory) as db:
            perf = self._find_performance(db, user_id, subject, grade_level)
            if perf is None:
                raise NotFound("No performance recorded for this subject and grade")
            view = PerformanceView(
                subject=perf.subject,
                grade_level=perf.grade_level,
                avg_score=perf.avg_score,
                total_quizzes=perf.total_quizzes,
                last_difficulty=perf.last_difficulty,
                updated_at=perf.updated_at,
            )
        self.cache.put_performance(user_id, subject, grade_level, view.model_dump(mode="json"))
        return view

    def hint(self, user_id: int, question_id: int) -> str:
        with session_scope(self.session_factory) as db:
            question = db.scalar(
                select(Question).join(Quiz, Quiz.id == Question.quiz_id)
                .where(Question.id == question_id, Quiz.user_id == user_id)
            )
            if question is None:
                raise NotFound("Question not found")
            text, options = question.question_text, list(question.options)
        return self.ai.generate_hint(text, options)

    # ---------------------------------------------------------------- helpers

    @staticmethod
    def _load_owned_quiz(db: Session, user_id: int, quiz_id: int) -> Quiz:
        quiz = db.scalar(
            select(Quiz).options(selectinload(Quiz.questions)).where(Quiz.id == quiz_id, Quiz.user_id == user_id)
        )
        if quiz is None:
            raise NotFound("Quiz not found")
        return quiz

    @staticmethod
    def _find_performance(db: Session, user_id: int, subject: str, grade_level: str) -> Optional[PerformanceAggregate]:
        return db.scalar(
            select(PerformanceAggregate).where(
                PerformanceAggregate.user_id == user_id,
                PerformanceAggregate.subject == subject,
                PerformanceAggregate.grade_level == grade_level,
            )
        )
