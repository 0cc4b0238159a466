from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from conftest import correct_answers, make_drafts

from quizgen.core.database import session_scope
from quizgen.core.errors import GenerationFailure, NotFound, PersistenceFailure, TransientDependencyFailure, ValidationError
from quizgen.models.orm import PerformanceAggregate, Question, Quiz, Submission, utcnow
from quizgen.models.schemas import HistoryFilters
from quizgen.services import lifecycle
from quizgen.services.lifecycle import FALLBACK_SUGGESTIONS, QuizLifecycleManager


def aggregate(session_factory, user_id, subject="Math", grade="5"):
    with session_factory() as db:
        return db.scalar(select(PerformanceAggregate).where(
            PerformanceAggregate.user_id == user_id,
            PerformanceAggregate.subject == subject,
            PerformanceAggregate.grade_level == grade,
        ))


def count_rows(session_factory, model):
    with session_factory() as db:
        return db.scalar(select(func.count()).select_from(model))


def answers_scoring(count, correct):
    return [f"A{i}" if i <= correct else "wrong" for i in range(1, count + 1)]


# ------------------------------------------------------------------ generate

def test_generate_orders_questions_contiguously(manager, users, session_factory, fake_redis):
    quiz = manager.generate(users["alice"], "Math", "5", count=10)

    assert [q.order_number for q in quiz.questions] == list(range(1, 11))
    assert quiz.total_questions == 10
    assert quiz.title == "Math Quiz - 5"
    assert fake_redis.ttls[f"quiz:{quiz.id}"] == 600
    with session_factory() as db:
        orders = db.scalars(select(Question.order_number).where(Question.quiz_id == quiz.id)).all()
    assert sorted(orders) == list(range(1, 11))


def test_generate_defaults_to_medium_without_history(manager, users, oracle):
    quiz = manager.generate(users["alice"], "Math", "5", count=3)
    assert quiz.difficulty_level == "medium"
    oracle.generate_questions.assert_called_once_with("Math", "5", 3, "medium")


def test_explicit_difficulty_wins(manager, users, oracle):
    quiz = manager.generate(users["alice"], "Math", "5", count=3, difficulty="hard")
    assert quiz.difficulty_level == "hard"


def test_generate_adapts_from_performance(manager, users, oracle):
    alice = users["alice"]
    quiz = manager.generate(alice, "Math", "5", count=4)
    manager.submit(alice, quiz.id, correct_answers(4))

    assert manager.generate(alice, "Math", "5", count=4).difficulty_level == "hard"

    quiz = manager.generate(alice, "History", "5", count=4, difficulty="medium")
    manager.submit(alice, quiz.id, answers_scoring(4, 1))
    assert manager.generate(alice, "History", "5", count=4).difficulty_level == "easy"


@pytest.mark.parametrize("kwargs", [
    {"count": 0},
    {"count": 51},
    {"difficulty": "extreme"},
    {"subject": "M"},
    {"grade_level": "  "},
])
def test_generate_rejects_bad_input_before_calling_oracle(manager, users, oracle, kwargs):
    args = {"subject": "Math", "grade_level": "5", "count": 5}
    args.update(kwargs)
    with pytest.raises(ValidationError):
        manager.generate(users["alice"], **args)
    oracle.generate_questions.assert_not_called()


def test_wrong_question_count_persists_nothing(manager, users, oracle, session_factory):
    oracle.generate_questions.side_effect = None
    oracle.generate_questions.return_value = make_drafts(4)
    with pytest.raises(GenerationFailure):
        manager.generate(users["alice"], "Math", "5", count=5)
    assert count_rows(session_factory, Quiz) == 0


def test_malformed_draft_persists_nothing(manager, users, oracle, session_factory):
    drafts = make_drafts(2)
    drafts[1]["options"] = ["only", "three", "options"]
    oracle.generate_questions.side_effect = None
    oracle.generate_questions.return_value = drafts
    with pytest.raises(GenerationFailure):
        manager.generate(users["alice"], "Math", "5", count=2)
    assert count_rows(session_factory, Quiz) == 0
    assert count_rows(session_factory, Question) == 0


# -------------------------------------------------------------------- submit

def test_submit_scores_and_creates_aggregate(manager, users, session_factory):
    alice = users["alice"]
    quiz = manager.generate(alice, "Math", "5", count=4)
    result = manager.submit(alice, quiz.id, answers_scoring(4, 3), time_taken=42)

    assert result.score == 75
    assert result.total_points == 4
    assert not result.is_retry
    assert [f.is_correct for f in result.feedback] == [True, True, True, False]
    perf = aggregate(session_factory, alice)
    assert perf.total_quizzes == 1
    assert perf.avg_score == 75
    assert perf.last_difficulty == "medium"


def test_sequential_submissions_average_to_the_mean(manager, users, session_factory):
    alice = users["alice"]
    scores = []
    for correct in (4, 2, 3, 1, 4):
        quiz = manager.generate(alice, "Math", "5", count=4, difficulty="easy")
        scores.append(manager.submit(alice, quiz.id, answers_scoring(4, correct)).score)

    perf = aggregate(session_factory, alice)
    assert perf.total_quizzes == len(scores)
    assert perf.avg_score == pytest.approx(sum(scores) / len(scores))
    assert perf.last_difficulty == "easy"


def test_submit_length_mismatch_has_no_side_effect(manager, users, session_factory, oracle):
    quiz = manager.generate(users["alice"], "Math", "5", count=3)
    with pytest.raises(ValidationError):
        manager.submit(users["alice"], quiz.id, ["A1"])
    assert count_rows(session_factory, Submission) == 0
    assert aggregate(session_factory, users["alice"]) is None
    oracle.generate_suggestions.assert_not_called()


def test_submit_to_someone_elses_quiz_is_not_found(manager, users):
    quiz = manager.generate(users["alice"], "Math", "5", count=2)
    with pytest.raises(NotFound):
        manager.submit(users["bob"], quiz.id, correct_answers(2))
    with pytest.raises(NotFound):
        manager.submit(users["alice"], quiz.id + 100, correct_answers(2))


def test_negative_time_taken_rejected(manager, users):
    quiz = manager.generate(users["alice"], "Math", "5", count=2)
    with pytest.raises(ValidationError):
        manager.submit(users["alice"], quiz.id, correct_answers(2), time_taken=-1)


def test_suggestions_receive_the_missed_questions(manager, users, oracle):
    quiz = manager.generate(users["alice"], "Math", "5", count=3)
    manager.submit(users["alice"], quiz.id, ["wrong", "A2", "wrong"])

    subject, grade, incorrect, score, fallback = oracle.generate_suggestions.call_args.args
    assert [q.question_text for q in incorrect] == ["Question 1?", "Question 3?"]
    assert score == pytest.approx(100 / 3)
    assert list(fallback) == FALLBACK_SUGGESTIONS


def test_suggestion_failure_falls_back(manager, users, oracle, session_factory):
    oracle.generate_suggestions.side_effect = TransientDependencyFailure("down")
    quiz = manager.generate(users["alice"], "Math", "5", count=2)
    result = manager.submit(users["alice"], quiz.id, ["A1", "x"])

    assert result.suggestions == FALLBACK_SUGGESTIONS
    assert count_rows(session_factory, Submission) == 1


def test_notifier_receives_scored_submission(manager, users, notifier):
    quiz = manager.generate(users["alice"], "Math", "5", count=2)
    result = manager.submit(users["alice"], quiz.id, correct_answers(2))

    event = notifier.submission_scored.call_args.args[0]
    assert event.username == "alice"
    assert event.email == "alice@example.com"
    assert event.quiz_title == "Math Quiz - 5"
    assert event.submission_id == result.submission_id
    assert event.score == 100


def test_notifier_failure_does_not_fail_submission(manager, users, notifier, session_factory):
    notifier.submission_scored.side_effect = RuntimeError("smtp down")
    quiz = manager.generate(users["alice"], "Math", "5", count=2)
    assert manager.submit(users["alice"], quiz.id, correct_answers(2)).score == 100
    assert count_rows(session_factory, Submission) == 1


# --------------------------------------------------------------------- retry

def test_retry_without_original_is_not_found(manager, users, session_factory):
    quiz = manager.generate(users["alice"], "Math", "5", count=2)
    with pytest.raises(NotFound, match="Original quiz submission not found"):
        manager.retry(users["alice"], quiz.id, correct_answers(2))
    assert count_rows(session_factory, Submission) == 0


def test_retry_links_original_and_leaves_aggregate_alone(manager, users, session_factory):
    alice = users["alice"]
    quiz = manager.generate(alice, "Math", "5", count=4)
    original = manager.submit(alice, quiz.id, answers_scoring(4, 1))
    before = aggregate(session_factory, alice)

    first = manager.retry(alice, quiz.id, answers_scoring(4, 3))
    second = manager.retry(alice, quiz.id, correct_answers(4))

    assert first.is_retry and second.is_retry
    assert first.original_submission_id == original.submission_id
    assert second.original_submission_id == original.submission_id
    after = aggregate(session_factory, alice)
    assert after.total_quizzes == before.total_quizzes == 1
    assert after.avg_score == before.avg_score == 25


def test_another_users_submission_is_not_an_original(manager, users):
    quiz = manager.generate(users["alice"], "Math", "5", count=2)
    manager.submit(users["alice"], quiz.id, correct_answers(2))
    with pytest.raises(NotFound):
        manager.retry(users["bob"], quiz.id, correct_answers(2))


# --------------------------------------------------------------------- reads

def test_get_quiz_hides_answers_and_caches(manager, users, fake_redis):
    quiz = manager.generate(users["alice"], "Math", "5", count=2)
    fake_redis.store.clear()

    first = manager.get_quiz(users["alice"], quiz.id)
    second = manager.get_quiz(users["alice"], quiz.id)

    assert not first.cached and second.cached
    dumped = second.model_dump()
    assert "correct_answer" not in dumped["questions"][0]
    assert "explanation" not in dumped["questions"][0]


def test_get_quiz_checks_ownership_even_when_cached(manager, users):
    quiz = manager.generate(users["alice"], "Math", "5", count=2)
    with pytest.raises(NotFound):
        manager.get_quiz(users["bob"], quiz.id)


def test_history_never_served_stale_after_submit(manager, users):
    alice = users["alice"]
    quiz = manager.generate(alice, "Math", "5", count=2)
    filters = HistoryFilters()

    before = manager.history(alice, filters)
    assert manager.history(alice, filters).cached
    assert before.quizzes[0].score is None

    manager.submit(alice, quiz.id, correct_answers(2))
    after = manager.history(alice, filters)

    assert not after.cached
    assert after.quizzes[0].score == 100


def test_history_includes_newly_generated_quiz(manager, users):
    alice = users["alice"]
    filters = HistoryFilters()
    manager.generate(alice, "Math", "5", count=2)
    assert manager.history(alice, filters).pagination.total == 1
    assert manager.history(alice, filters).cached

    second = manager.generate(alice, "Math", "5", count=2)
    page = manager.history(alice, filters)

    assert not page.cached
    assert page.pagination.total == 2
    assert page.quizzes[0].id == second.id


def test_history_joins_latest_submission(manager, users):
    alice = users["alice"]
    quiz = manager.generate(alice, "Math", "5", count=2)
    manager.submit(alice, quiz.id, ["x", "x"])
    latest = manager.retry(alice, quiz.id, ["A1", "x"])

    page = manager.history(alice, HistoryFilters())
    assert len(page.quizzes) == 1
    assert page.quizzes[0].submission_id == latest.submission_id
    assert page.quizzes[0].score == 50
    assert page.quizzes[0].is_retry


def test_history_filters_and_pagination(manager, users, session_factory):
    alice = users["alice"]
    algebra = manager.generate(alice, "Algebra", "8", count=2)
    geometry = manager.generate(alice, "Geometry", "8", count=2)
    manager.generate(alice, "Biology", "7", count=2)
    manager.generate(users["bob"], "Algebra", "8", count=2)
    manager.submit(alice, algebra.id, correct_answers(2))
    manager.submit(alice, geometry.id, ["A1", "x"])

    assert manager.history(alice, HistoryFilters()).pagination.total == 3
    assert [q.subject for q in manager.history(alice, HistoryFilters(grade="8")).quizzes] == ["Geometry", "Algebra"]
    assert [q.subject for q in manager.history(alice, HistoryFilters(subject="algeb")).quizzes] == ["Algebra"]

    high = manager.history(alice, HistoryFilters(min_score=80))
    assert [q.id for q in high.quizzes] == [algebra.id]
    assert high.pagination.total == 1
    assert [q.id for q in manager.history(alice, HistoryFilters(max_score=60)).quizzes] == [geometry.id]

    paged = manager.history(alice, HistoryFilters(page=2, limit=2))
    assert paged.pagination.total == 3
    assert [q.subject for q in paged.quizzes] == ["Algebra"]

    future = utcnow() + timedelta(days=1)
    assert manager.history(alice, HistoryFilters(start_date=future)).quizzes == []
    assert manager.history(alice, HistoryFilters(end_date=future)).pagination.total == 3


def test_offset_dates_compare_as_utc(manager, users):
    alice = users["alice"]
    manager.generate(alice, "Math", "5", count=2)

    aware = HistoryFilters(start_date="2026-10-19T12:00:00+02:00", end_date="2026-10-19T23:00:00-05:00")
    assert aware.start_date == datetime(2026, 10, 19, 10, 0)
    assert aware.end_date == datetime(2026, 10, 20, 4, 0)
    assert aware.cache_token() == HistoryFilters(
        start_date=datetime(2026, 10, 19, 10, 0), end_date=datetime(2026, 10, 20, 4, 0)
    ).cache_token()

    shifted = utcnow().replace(tzinfo=timezone.utc).astimezone(timezone(timedelta(hours=-5)))
    assert manager.history(alice, HistoryFilters(start_date=shifted + timedelta(hours=1))).quizzes == []
    assert manager.history(alice, HistoryFilters(start_date=shifted - timedelta(hours=1))).pagination.total == 1


def test_performance_view_and_cache(manager, users):
    alice = users["alice"]
    with pytest.raises(NotFound):
        manager.performance(alice, "Math", "5")

    quiz = manager.generate(alice, "Math", "5", count=2)
    manager.submit(alice, quiz.id, ["A1", "x"])

    view = manager.performance(alice, "Math", "5")
    assert view.avg_score == 50
    assert view.total_quizzes == 1
    assert not view.cached
    assert manager.performance(alice, "Math", "5").cached


def test_hint_for_owned_question(manager, users, oracle):
    quiz = manager.generate(users["alice"], "Math", "5", count=2)
    question = quiz.questions[0]

    assert manager.hint(users["alice"], question.id) == "Think about the first option."
    oracle.generate_hint.assert_called_once_with("Question 1?", ["A1", "B1", "C1", "D1"])
    with pytest.raises(NotFound):
        manager.hint(users["bob"], question.id)


# --------------------------------------------------------------- persistence

def test_failed_commit_rolls_back_and_surfaces():
    db = MagicMock()
    db.commit.side_effect = OperationalError("INSERT", {}, Exception("disk full"))
    with pytest.raises(PersistenceFailure):
        with session_scope(lambda: db):
            pass
    db.rollback.assert_called_once()
    db.close.assert_called_once()


def test_failed_aggregate_write_leaves_no_submission(manager, users, session_factory, fake_redis, monkeypatch):
    alice = users["alice"]
    quiz = manager.generate(alice, "Math", "5", count=2)

    def broken_upsert(*args, **kwargs):
        raise OperationalError("INSERT INTO user_performance", {}, Exception("database is locked"))

    monkeypatch.setattr(lifecycle, "upsert_performance", broken_upsert)
    manager.history(alice, HistoryFilters())
    with pytest.raises(PersistenceFailure):
        manager.submit(alice, quiz.id, correct_answers(2))

    assert count_rows(session_factory, Submission) == 0
    assert aggregate(session_factory, alice) is None
    assert any(k.startswith(f"history:{alice}:") for k in fake_redis.store)


def test_submits_from_separate_managers_both_reach_the_aggregate(manager, coordinator, oracle, users, session_factory):
    alice = users["alice"]
    other = QuizLifecycleManager(coordinator, oracle, notifier=MagicMock(), session_factory=session_factory)
    first = manager.generate(alice, "Math", "5", count=2)
    second = other.generate(alice, "Math", "5", count=2)

    manager.submit(alice, first.id, correct_answers(2))
    other.submit(alice, second.id, ["A1", "x"])

    perf = aggregate(session_factory, alice)
    assert perf.total_quizzes == 2
    assert perf.avg_score == 75
