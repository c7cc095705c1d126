"""
Pytest configuration for progress-service tests
"""
import pytest
from datetime import datetime, timezone

from progress_engine.config import get_settings
from progress_engine.schemas import LearnerProfile, LessonSummary
from progress_engine.services.progress_repository import InMemoryProgressRepository
from progress_engine.services.progress_service import ProgressService


@pytest.fixture(autouse=True)
def fresh_settings():
    """Settings are cached; every test starts from the environment it sets up"""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def override_settings(monkeypatch):
    """Set engine settings through the environment for one test"""
    def _override(**values):
        for name, value in values.items():
            monkeypatch.setenv(name, str(value))
        get_settings.cache_clear()
        return get_settings()
    return _override


@pytest.fixture
def at():
    """at(day, hour=12, minute=0) -> aware UTC datetime in November 2025"""
    def _at(day: int, hour: int = 12, minute: int = 0) -> datetime:
        return datetime(2025, 11, day, hour, minute, tzinfo=timezone.utc)
    return _at


@pytest.fixture
def profile():
    return LearnerProfile(learner_id="child-1")


@pytest.fixture
def catalog():
    """Two Wudu lessons and one Salah lesson in week 1, one Quran lesson in week 2"""
    return [
        LessonSummary(lesson_id="wudu-1", category="Wudu", week_number=1, base_xp=20),
        LessonSummary(lesson_id="wudu-2", category="Wudu", week_number=1, base_xp=20),
        LessonSummary(lesson_id="salah-1", category="Salah", week_number=1, base_xp=20),
        LessonSummary(lesson_id="quran-1", category="Quran", week_number=2, base_xp=40),
    ]


@pytest.fixture
def repository():
    return InMemoryProgressRepository()


@pytest.fixture
def service(repository, catalog):
    return ProgressService(repository, catalog=catalog, tz="UTC")
