"""Pydantic views shared by the services, the cache and the API."""

import base64
import json
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

Difficulty = Literal["easy", "medium", "hard"]
Period = Literal["all", "today", "week", "month"]


class QuestionDraft(BaseModel):
    """One question as produced by the generation oracle."""

    question: str = Field(..., min_length=1)
    options: List[str] = Field(..., min_length=4, max_length=4)
    correctAnswer: str = Field(..., min_length=1)
    explanation: str = ""


class QuestionView(BaseModel):
    id: int
    question_text: str
    question_type: str
    options: List[str]
    points: int
    order_number: int


class QuizView(BaseModel):
    id: int
    user_id: int
    title: str
    subject: str
    grade_level: str
    difficulty_level: Difficulty
    total_questions: int
    created_at: datetime
    questions: List[QuestionView]
    cached: bool = False


class FeedbackItem(BaseModel):
    question_id: int
    user_answer: Optional[str]
    correct_answer: str
    is_correct: bool
    explanation: str


class SubmissionResult(BaseModel):
    submission_id: int
    quiz_id: int
    score: float
    total_points: int
    feedback: List[FeedbackItem]
    suggestions: List[str]
    is_retry: bool = False
    original_submission_id: Optional[int] = None


class HistoryFilters(BaseModel):
    grade: Optional[str] = None
    subject: Optional[str] = None
    min_score: Optional[float] = Field(default=None, ge=0, le=100)
    max_score: Optional[float] = Field(default=None, ge=0, le=100)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=50)

    @field_validator("start_date", "end_date")
    @classmethod
    def to_naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        # Stored timestamps are naive UTC
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    def cache_token(self) -> str:
        """Deterministic encoding of the exact filter set, pagination included."""
        raw = json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


class HistoryItem(BaseModel):
    id: int
    title: str
    subject: str
    grade_level: str
    difficulty_level: str
    total_questions: int
    created_at: datetime
    submission_id: Optional[int] = None
    score: Optional[float] = None
    submitted_at: Optional[datetime] = None
    is_retry: Optional[bool] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int


class HistoryPage(BaseModel):
    quizzes: List[HistoryItem]
    pagination: Pagination
    cached: bool = False


class PerformanceView(BaseModel):
    subject: str
    grade_level: str
    avg_score: float
    total_quizzes: int
    last_difficulty: Difficulty
    updated_at: datetime
    cached: bool = False


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: int
    username: str
    score: float
    submitted_at: datetime
    quiz_title: str
    total_questions: int


class LeaderboardStats(BaseModel):
    total_participants: int
    average_score: float


class Leaderboard(BaseModel):
    subject: str
    grade_level: str
    period: Period
    limit: int
    entries: List[LeaderboardEntry]
    stats: LeaderboardStats
    cached: bool = False
