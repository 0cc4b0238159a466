from datetime import datetime
from functools import lru_cache
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaError

from quizgen.core.auth import TokenData, get_current_user
from quizgen.core.cache import CacheCoordinator, cache
from quizgen.core.errors import ValidationError
from quizgen.models.schemas import HistoryFilters, HistoryPage, Leaderboard, PerformanceView, QuizView, SubmissionResult
from quizgen.services.ai_service import AIService
from quizgen.services.leaderboard import LeaderboardRanker
from quizgen.services.lifecycle import QuizLifecycleManager

router = APIRouter()


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class GenerateRequest(CamelModel):
    subject: str
    grade_level: str = Field(..., alias="gradeLevel")
    number_of_questions: Optional[int] = Field(default=None, alias="numberOfQuestions")
    difficulty: Optional[str] = None


class SubmitRequest(CamelModel):
    quiz_id: int = Field(..., alias="quizId")
    answers: List[Optional[str]]
    time_taken: Optional[int] = Field(default=None, alias="timeTaken")


class HintRequest(CamelModel):
    question_id: int = Field(..., alias="questionId")


class HintResponse(BaseModel):
    question_id: int
    hint: str


def get_cache_coordinator() -> CacheCoordinator:
    return CacheCoordinator(cache)


@lru_cache()
def get_ai_service() -> AIService:
    return AIService()


def get_lifecycle(
    coordinator: CacheCoordinator = Depends(get_cache_coordinator),
    ai: AIService = Depends(get_ai_service),
) -> QuizLifecycleManager:
    return QuizLifecycleManager(coordinator, ai)


def get_ranker(coordinator: CacheCoordinator = Depends(get_cache_coordinator)) -> LeaderboardRanker:
    return LeaderboardRanker(coordinator)


@router.post("/generate", response_model=QuizView, status_code=201)
def generate_quiz(
    payload: GenerateRequest,
    user: TokenData = Depends(get_current_user),
    manager: QuizLifecycleManager = Depends(get_lifecycle),
):
    return manager.generate(
        user.sub, payload.subject, payload.grade_level, payload.number_of_questions, payload.difficulty
    )


@router.post("/submit", response_model=SubmissionResult)
def submit_quiz(
    payload: SubmitRequest,
    user: TokenData = Depends(get_current_user),
    manager: QuizLifecycleManager = Depends(get_lifecycle),
):
    return manager.submit(user.sub, payload.quiz_id, payload.answers, payload.time_taken)


@router.post("/retry", response_model=SubmissionResult)
def retry_quiz(
    payload: SubmitRequest,
    user: TokenData = Depends(get_current_user),
    manager: QuizLifecycleManager = Depends(get_lifecycle),
):
    return manager.retry(user.sub, payload.quiz_id, payload.answers, payload.time_taken)


@router.get("/history", response_model=HistoryPage)
def quiz_history(
    grade: Optional[str] = None,
    subject: Optional[str] = None,
    min_score: Optional[float] = Query(None, alias="minScore"),
    max_score: Optional[float] = Query(None, alias="maxScore"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    page: int = 1,
    limit: int = 20,
    user: TokenData = Depends(get_current_user),
    manager: QuizLifecycleManager = Depends(get_lifecycle),
):
    try:
        filters = HistoryFilters(
            grade=grade, subject=subject, min_score=min_score, max_score=max_score,
            start_date=start_date, end_date=end_date, page=page, limit=limit,
        )
    except SchemaError as e:
        raise ValidationError(f"Invalid history filters: {e.errors()[0]['msg']}") from e
    return manager.history(user.sub, filters)


@router.get("/leaderboard", response_model=Leaderboard)
def leaderboard(
    subject: str,
    grade_level: str = Query(..., alias="gradeLevel"),
    period: str = "all",
    limit: int = 10,
    user: TokenData = Depends(get_current_user),
    ranker: LeaderboardRanker = Depends(get_ranker),
):
    return ranker.rank(subject, grade_level, period, limit)


@router.get("/performance", response_model=PerformanceView)
def performance(
    subject: str,
    grade_level: str = Query(..., alias="gradeLevel"),
    user: TokenData = Depends(get_current_user),
    manager: QuizLifecycleManager = Depends(get_lifecycle),
):
    return manager.performance(user.sub, subject, grade_level)


@router.post("/hint", response_model=HintResponse)
def question_hint(
    payload: HintRequest,
    user: TokenData = Depends(get_current_user),
    manager: QuizLifecycleManager = Depends(get_lifecycle),
):
    return HintResponse(question_id=payload.question_id, hint=manager.hint(user.sub, payload.question_id))


@router.get("/{quiz_id}", response_model=QuizView)
def get_quiz(
    quiz_id: int,
    user: TokenData = Depends(get_current_user),
    manager: QuizLifecycleManager = Depends(get_lifecycle),
):
    return manager.get_quiz(user.sub, quiz_id)
