"""Progress Repository - Data Access Layer"""
import logging
import threading
from collections import defaultdict
from contextlib import ExitStack, contextmanager
from typing import Callable, Dict, Iterator, List, NamedTuple, Optional, Protocol, Tuple

from progress_engine.schemas import Achievement, AchievementKind, LearnerProfile, LessonAttemptProgress

logger = logging.getLogger(__name__)

RecordKey = Tuple[str, Optional[str]]


class DeletionReport(NamedTuple):
    learner_id: str
    progress_removed: int
    achievements_removed: int
    profile_removed: bool


class ProgressStore(Protocol):
    """Operations the engine needs from local storage / sync transport"""

    def lock(self, learner_id: str, lesson_id: Optional[str] = None): ...

    def lock_learner(self, learner_id: str): ...

    def fetch_progress(self, learner_id: str, lesson_id: str) -> Optional[LessonAttemptProgress]: ...

    def fetch_progress_where(
        self, learner_id: str, predicate: Callable[[LessonAttemptProgress], bool]
    ) -> List[LessonAttemptProgress]: ...

    def fetch_profile(self, learner_id: str) -> LearnerProfile: ...

    def fetch_achievements(self, learner_id: str) -> List[Achievement]: ...

    def save_progress(self, progress: LessonAttemptProgress) -> None: ...

    def save_profile(self, profile: LearnerProfile) -> None: ...

    def save_achievements(self, learner_id: str, achievements: List[Achievement]) -> None: ...

    def delete_learner(self, learner_id: str) -> DeletionReport: ...

    def reset_learner_progress(self, learner_id: str) -> DeletionReport: ...


class InMemoryProgressRepository:
    """
    Process-local store implementing ProgressStore.

    Writes for one (learner, lesson) key are serialized by lock(); the profile and
    achievement set of a learner share the (learner, None) key. Acquire a lesson
    lock before the learner lock, never the reverse.
    """

    def __init__(self):
        self._progress: Dict[Tuple[str, str], LessonAttemptProgress] = {}
        self._profiles: Dict[str, LearnerProfile] = {}
        self._achievements: Dict[str, Dict[AchievementKind, Achievement]] = defaultdict(dict)
        self._data_lock = threading.RLock()
        self._locks: Dict[RecordKey, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    # ============= LOCKING =============

    def _lock_for(self, key: RecordKey) -> threading.RLock:
        with self._locks_guard:
            if key not in self._locks:
                self._locks[key] = threading.RLock()
            return self._locks[key]

    @contextmanager
    def lock(self, learner_id: str, lesson_id: Optional[str] = None) -> Iterator[None]:
        """Serialize read-modify-write on one record key"""
        with self._lock_for((learner_id, lesson_id)):
            yield

    @contextmanager
    def lock_learner(self, learner_id: str) -> Iterator[None]:
        """
        Exclude every writer of the learner: each lesson lock (sorted), then the learner lock.

        Used by delete and reset so no in-flight lesson write lands after them.
        """
        with self._locks_guard:
            lesson_ids = {lesson for owner, lesson in self._locks if owner == learner_id and lesson}
        with self._data_lock:
            lesson_ids.update(lesson for owner, lesson in self._progress if owner == learner_id)

        with ExitStack() as stack:
            for lesson_id in sorted(lesson_ids):
                stack.enter_context(self.lock(learner_id, lesson_id))
            stack.enter_context(self.lock(learner_id))
            yield

    # ============= PROGRESS =============

    def fetch_progress(self, learner_id: str, lesson_id: str) -> Optional[LessonAttemptProgress]:
        with self._data_lock:
            return self._progress.get((learner_id, lesson_id))

    def fetch_progress_where(
        self,
        learner_id: str,
        predicate: Callable[[LessonAttemptProgress], bool],
    ) -> List[LessonAttemptProgress]:
        with self._data_lock:
            records = [p for (owner, _), p in self._progress.items() if owner == learner_id]
        return sorted((p for p in records if predicate(p)), key=lambda p: p.lesson_id)

    def save_progress(self, progress: LessonAttemptProgress) -> None:
        with self._data_lock:
            self._progress[(progress.learner_id, progress.lesson_id)] = progress
        logger.debug(f"Saved progress {progress.key}: phase={progress.last_completed_phase}")

    # ============= PROFILE =============

    def fetch_profile(self, learner_id: str) -> LearnerProfile:
        """Returns a zeroed profile if the learner has none yet"""
        with self._data_lock:
            profile = self._profiles.get(learner_id)
        if profile is None:
            logger.info(f"Learner {learner_id} not found, returning defaults")
            return LearnerProfile(learner_id=learner_id)
        return profile

    def save_profile(self, profile: LearnerProfile) -> None:
        with self._data_lock:
            self._profiles[profile.learner_id] = profile
        logger.debug(
            f"Saved profile {profile.learner_id}: xp={profile.total_xp}, streak={profile.current_streak}"
        )

    # ============= ACHIEVEMENTS =============

    def fetch_achievements(self, learner_id: str) -> List[Achievement]:
        with self._data_lock:
            stored = dict(self._achievements.get(learner_id, {}))
        return [stored[kind] for kind in AchievementKind if kind in stored]

    def save_achievements(self, learner_id: str, achievements: List[Achievement]) -> None:
        """Replace the learner's achievement set"""
        by_kind = {}
        for achievement in achievements:
            if achievement.learner_id != learner_id:
                raise ValueError(f"Achievement for {achievement.learner_id} saved under {learner_id}")
            by_kind[achievement.kind] = achievement
        with self._data_lock:
            self._achievements[learner_id] = by_kind

    # ============= OWNERSHIP / RESET =============

    def delete_learner(self, learner_id: str) -> DeletionReport:
        """
        Remove the learner and every record it owns in one batch.

        Dependent progress and achievements are enumerated explicitly; nothing
        relies on cascade behaviour of the backing store.
        """
        with self._data_lock:
            progress_keys = [key for key in self._progress if key[0] == learner_id]
            for key in progress_keys:
                del self._progress[key]
            achievements_removed = len(self._achievements.pop(learner_id, {}))
            profile_removed = self._profiles.pop(learner_id, None) is not None

        report = DeletionReport(learner_id, len(progress_keys), achievements_removed, profile_removed)
        logger.info(
            f"Deleted learner {learner_id}: progress={report.progress_removed}, "
            f"achievements={report.achievements_removed}, profile={report.profile_removed}"
        )
        return report

    def reset_learner_progress(self, learner_id: str) -> DeletionReport:
        """
        Auditable reset: progress and achievements removed, profile counters zeroed.

        The learner itself is kept. This is the only path that lowers XP or totals.
        """
        with self._data_lock:
            previous = self._profiles.get(learner_id)
            progress_keys = [key for key in self._progress if key[0] == learner_id]
            for key in progress_keys:
                del self._progress[key]
            achievements_removed = len(self._achievements.pop(learner_id, {}))
            self._profiles[learner_id] = LearnerProfile(learner_id=learner_id)

        logger.warning(
            f"Progress reset for learner {learner_id}: removed {len(progress_keys)} progress records, "
            f"{achievements_removed} achievements; previous xp="
            f"{previous.total_xp if previous else 0}, lessons="
            f"{previous.total_lessons_completed if previous else 0}"
        )
        return DeletionReport(learner_id, len(progress_keys), achievements_removed, False)
