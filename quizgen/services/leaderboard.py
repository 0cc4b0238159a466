"""
Leaderboard ranking for a (subject, grade) pair over a time window.

Each user is represented by their single best qualifying submission; users
are then ranked by that score, earlier submission first on ties.
"""
import logging
from datetime import datetime, time, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from quizgen.core.cache import CacheCoordinator
from quizgen.core.database import SessionLocal, session_scope
from quizgen.core.errors import ValidationError
from quizgen.models.orm import Quiz, Submission, User, utcnow
from quizgen.models.schemas import Leaderboard, LeaderboardEntry, LeaderboardStats

logger = logging.getLogger(__name__)

PERIODS = ("all", "today", "week", "month")
PERIOD_DAYS = {"today": 0, "week": 7, "month": 30}
MAX_LIMIT = 50


def period_cutoff(period: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """Start of the window, anchored at UTC midnight; None for 'all'."""
    if period not in PERIODS:
        raise ValidationError(f"period must be one of {', '.join(PERIODS)}")
    if period == "all":
        return None
    midnight = datetime.combine((now or utcnow()).date(), time.min)
    return midnight - timedelta(days=PERIOD_DAYS[period])


class LeaderboardRanker:
    def __init__(self, cache: CacheCoordinator, session_factory: sessionmaker = SessionLocal):
        self.cache = cache
        self.session_factory = session_factory

    def rank(self, subject: str, grade_level: str, period: str = "all", limit: int = 10) -> Leaderboard:
        if not 1 <= limit <= MAX_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_LIMIT}")
        cutoff = period_cutoff(period)

        cached = self.cache.get_leaderboard(subject, grade_level, period, limit)
        if cached:
            board = Leaderboard.model_validate(cached)
            board.cached = True
            return board

        qualifying = [Quiz.subject == subject, Quiz.grade_level == grade_level]
        if cutoff is not None:
            qualifying.append(Submission.submitted_at >= cutoff)

        # Best attempt per user: highest score, most recent on a tie
        best = (
            select(
                Submission.user_id,
                User.username,
                Submission.score,
                Submission.submitted_at,
                Quiz.title.label("quiz_title"),
                Quiz.total_questions,
                func.row_number().over(
                    partition_by=Submission.user_id,
                    order_by=(Submission.score.desc(), Submission.submitted_at.desc(), Submission.id.desc()),
                ).label("rn"),
            )
            .join(Quiz, Quiz.id == Submission.quiz_id)
            .join(User, User.id == Submission.user_id)
            .where(*qualifying)
            .subquery()
        )
        top = (
            select(best)
            .where(best.c.rn == 1)
            .order_by(best.c.score.desc(), best.c.submitted_at.asc(), best.c.user_id.asc())
            .limit(limit)
        )
        totals = (
            select(func.count(func.distinct(Submission.user_id)), func.avg(Submission.score))
            .join(Quiz, Quiz.id == Submission.quiz_id)
            .join(User, User.id == Submission.user_id)
            .where(*qualifying)
        )

        with session_scope(self.session_factory) as db:
            rows = db.execute(top).all()
            participants, average = db.execute(totals).one()

        entries = [
            LeaderboardEntry(
                rank=position,
                user_id=r.user_id,
                username=r.username,
                score=r.score,
                submitted_at=r.submitted_at,
                quiz_title=r.quiz_title,
                total_questions=r.total_questions,
            )
            for position, r in enumerate(rows, start=1)
        ]
        stats = LeaderboardStats(
            total_participants=participants or 0,
            average_score=round(float(average), 2) if average is not None else 0.0,
        )
        board = Leaderboard(
            subject=subject, grade_level=grade_level, period=period, limit=limit, entries=entries, stats=stats
        )
        self.cache.put_leaderboard(subject, grade_level, period, limit, board.model_dump(mode="json"))
        logger.debug(f"Leaderboard {subject}/{grade_level}/{period}: {len(entries)} of {participants} participants")
        return board
