import fnmatch
import os
from typing import Dict, List, Optional
from unittest.mock import MagicMock

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
import redis
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from quizgen.core.auth import create_token
from quizgen.core.cache import CacheCoordinator, RedisCache
from quizgen.core.database import init_db
from quizgen.models.orm import User
from quizgen.services.ai_service import AIService
from quizgen.services.leaderboard import LeaderboardRanker
from quizgen.services.lifecycle import QuizLifecycleManager
from quizgen.services.notifications import NotificationChannel


class FakeRedis:
    """Dict-backed stand-in for the subset of redis.Redis the cache uses."""

    def __init__(self):
        self.store: Dict[str, str] = {}
        self.ttls: Dict[str, Optional[int]] = {}

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, ex=None):
        self.store[key] = value
        self.ttls[key] = ex
        return True

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                self.ttls.pop(key, None)
                removed += 1
        return removed

    def scan_iter(self, match=None, count=None):
        return iter([k for k in list(self.store) if match is None or fnmatch.fnmatchcase(k, match)])

    def ping(self):
        return True


class BrokenRedis:
    """Every call fails the way an unreachable server does."""

    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise redis.ConnectionError("Connection refused")
        return fail


def make_drafts(count: int) -> List[dict]:
    return [
        {
            "question": f"Question {i}?",
            "options": [f"A{i}", f"B{i}", f"C{i}", f"D{i}"],
            "correctAnswer": f"A{i}",
            "explanation": f"A{i} is right",
        }
        for i in range(1, count + 1)
    ]


def correct_answers(count: int) -> List[str]:
    return [f"A{i}" for i in range(1, count + 1)]


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def users(session_factory):
    with session_factory() as db:
        alice = User(username="alice", email="alice@example.com")
        bob = User(username="bob", email="bob@example.com")
        db.add_all([alice, bob])
        db.commit()
        return {"alice": alice.id, "bob": bob.id}


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def coordinator(fake_redis):
    return CacheCoordinator(RedisCache(fake_redis))


@pytest.fixture
def oracle():
    ai = MagicMock(spec=AIService)
    ai.generate_questions.side_effect = lambda subject, grade_level, count, difficulty: make_drafts(count)
    ai.generate_suggestions.return_value = [
        "Revisit the questions you missed.",
        "Practice similar problems daily.",
    ]
    ai.generate_hint.return_value = "Think about the first option."
    return ai


@pytest.fixture
def notifier():
    return MagicMock(spec=NotificationChannel)


@pytest.fixture
def manager(coordinator, oracle, notifier, session_factory):
    return QuizLifecycleManager(coordinator, oracle, notifier=notifier, session_factory=session_factory)


@pytest.fixture
def ranker(coordinator, session_factory):
    return LeaderboardRanker(coordinator, session_factory=session_factory)


@pytest.fixture
def client(manager, ranker, session_factory):
    from fastapi.testclient import TestClient

    from quizgen.api.quizzes import get_lifecycle, get_ranker
    from quizgen.core.database import get_db
    from quizgen.main import app

    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_lifecycle] = lambda: manager
    app.dependency_overrides[get_ranker] = lambda: ranker
    app.dependency_overrides[get_db] = override_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(users):
    def headers(name: str = "alice") -> dict:
        return {"Authorization": f"Bearer {create_token(users[name], name)}"}
    return headers
