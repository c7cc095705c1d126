"""Progress Service - Orchestration Layer used by the lesson player"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

from progress_engine.errors import RecordNotFound
from progress_engine.logic import phase_machine, streak_service, sync_merge
from progress_engine.logic.achievement_service import mark_achievement_seen
from progress_engine.logic.listeners import (
    AchievementOutcome,
    CompletionOutcome,
    on_lesson_completed,
    on_state_changed,
)
from progress_engine.logic.phase_machine import PracticeSession
from progress_engine.logic.streak_service import TimezoneLike
from progress_engine.schemas import (
    Achievement,
    AchievementContext,
    AchievementKind,
    LearnerProfile,
    LessonAttemptProgress,
    LessonCompletedEvent,
    LessonSummary,
    Phase,
)
from progress_engine.services.progress_repository import DeletionReport, ProgressStore

logger = logging.getLogger(__name__)


class PhaseResult(NamedTuple):
    progress: LessonAttemptProgress
    event: Optional[LessonCompletedEvent]
    completion: Optional[CompletionOutcome]


class ProgressService:
    """
    Runs engine operations against a ProgressStore under its per-key locks.

    Every method reads, computes and writes back in one critical section, so a
    failed operation writes nothing and can be retried with the same input.
    """

    def __init__(
        self,
        repository: ProgressStore,
        catalog: Optional[Iterable[LessonSummary]] = None,
        tz: TimezoneLike = None,
    ):
        self.repository = repository
        self.catalog = list(catalog or [])
        self.tz = tz
        # Practice scores are not persisted; held until the attempt reaches Reward
        self._pending_scores: Dict[Tuple[str, str], int] = {}
        logger.info(f"ProgressService initialized: catalog={len(self.catalog)} lessons")

    def build_context(
        self,
        learner_id: str,
        completed_family_activities: int = 0,
        current_week_number: Optional[int] = None,
    ) -> AchievementContext:
        completed = self.repository.fetch_progress_where(learner_id, lambda p: p.is_completed)
        return AchievementContext(
            lessons=self.catalog,
            completed_lesson_ids={p.lesson_id for p in completed},
            completed_family_activities=completed_family_activities,
            current_week_number=current_week_number,
        )

    # ============= LESSON PLAYER =============

    def start_or_resume(
        self, learner_id: str, lesson_id: str, now: datetime
    ) -> Tuple[LessonAttemptProgress, Optional[Phase]]:
        """
        Open a lesson: creates the record on first interaction.

        Returns:
            Tuple of (progress, phase_to_play); phase_to_play is None when the
            attempt is completed and a restart is needed to replay
        """
        with self.repository.lock(learner_id, lesson_id):
            progress = self.repository.fetch_progress(learner_id, lesson_id)
            if progress is None:
                progress = phase_machine.new_progress(learner_id, lesson_id, now)
                logger.info(f"Created progress record {progress.key}")
            else:
                last = progress.last_accessed_at
                progress = progress.model_copy(update={"last_accessed_at": max(last, now) if last else now})
            self.repository.save_progress(progress)
            return progress, phase_machine.resume_phase(progress)

    def complete_phase(
        self,
        learner_id: str,
        lesson_id: str,
        phase: Phase,
        now: datetime,
        practice: Optional[PracticeSession] = None,
        current_week_number: Optional[int] = None,
        completed_family_activities: int = 0,
    ) -> PhaseResult:
        """
        Record a finished phase; completing Reward runs the completion pipeline.

        Raises:
            RecordNotFound: the lesson was never opened
            OutOfOrderTransition: phase is not the next one
            ValueError: Practice reported finished with questions still open
        """
        key = (learner_id, lesson_id)
        with self.repository.lock(learner_id, lesson_id):
            progress = self.repository.fetch_progress(learner_id, lesson_id)
            if progress is None:
                raise RecordNotFound(f"{learner_id}:{lesson_id}")

            if phase == Phase.PRACTICE and practice is not None and not practice.is_finished:
                raise ValueError(
                    f"Practice not finished: question {practice.question_index + 1} of {practice.total_questions}"
                )

            transition = phase_machine.transition_phase(progress, phase, now)
            progress = transition.progress
            if phase == Phase.PRACTICE and practice is not None:
                self._pending_scores[key] = practice.score()

            if transition.event is None:
                self.repository.save_progress(progress)
                return PhaseResult(progress, None, None)

            context = self.build_context(learner_id, completed_family_activities, current_week_number)
            with self.repository.lock(learner_id):
                outcome = on_lesson_completed(
                    transition.event,
                    self.repository.fetch_profile(learner_id),
                    self.repository.fetch_achievements(learner_id),
                    context,
                    self.tz,
                )
                progress = phase_machine.record_lesson_result(
                    progress, self._pending_scores.get(key, 0), outcome.xp_awarded
                )
                achievements = self.repository.fetch_achievements(learner_id) + outcome.new_achievements
                self.repository.save_progress(progress)
                self.repository.save_profile(outcome.profile)
                self.repository.save_achievements(learner_id, achievements)
            self._pending_scores.pop(key, None)

            return PhaseResult(progress, transition.event, outcome)

    def restart_lesson(self, learner_id: str, lesson_id: str, now: datetime) -> LessonAttemptProgress:
        with self.repository.lock(learner_id, lesson_id):
            progress = self.repository.fetch_progress(learner_id, lesson_id)
            if progress is None:
                raise RecordNotFound(f"{learner_id}:{lesson_id}")
            progress = phase_machine.restart_lesson(progress, now)
            self._pending_scores.pop((learner_id, lesson_id), None)
            self.repository.save_progress(progress)
            return progress

    # ============= STREAKS =============

    def check_streak_on_launch(self, learner_id: str, now: datetime) -> LearnerProfile:
        with self.repository.lock(learner_id):
            profile = self.repository.fetch_profile(learner_id)
            updated = streak_service.check_expired_streak(profile, now, self.tz)
            if updated != profile:
                self.repository.save_profile(updated)
            return updated

    def grant_streak_freeze(self, learner_id: str, now: datetime) -> LearnerProfile:
        """Raises FreezeAlreadyGranted without writing anything"""
        with self.repository.lock(learner_id):
            profile = streak_service.grant_streak_freeze(self.repository.fetch_profile(learner_id), now)
            self.repository.save_profile(profile)
            return profile

    # ============= ACHIEVEMENTS =============

    def evaluate_achievements(
        self,
        learner_id: str,
        now: datetime,
        completed_family_activities: int = 0,
        current_week_number: Optional[int] = None,
        reason: str = "state_changed",
    ) -> AchievementOutcome:
        context = self.build_context(learner_id, completed_family_activities, current_week_number)
        with self.repository.lock(learner_id):
            achievements = self.repository.fetch_achievements(learner_id)
            outcome = on_state_changed(
                self.repository.fetch_profile(learner_id), achievements, now, context, reason
            )
            if outcome.new_achievements:
                self.repository.save_profile(outcome.profile)
                self.repository.save_achievements(learner_id, achievements + outcome.new_achievements)
            return outcome

    def mark_achievement_seen(self, learner_id: str, kind: AchievementKind) -> Achievement:
        with self.repository.lock(learner_id):
            achievements = self.repository.fetch_achievements(learner_id)
            match = next((a for a in achievements if a.kind == kind), None)
            if match is None:
                raise RecordNotFound(f"{learner_id}:{kind.value}")
            seen = mark_achievement_seen(match)
            self.repository.save_achievements(
                learner_id, [seen if a.kind == kind else a for a in achievements]
            )
            return seen

    # ============= SYNC =============

    def apply_remote_snapshot(self, remote: LessonAttemptProgress) -> sync_merge.MergeResult:
        """Merge a remote progress snapshot into the local record and persist it"""
        with self.repository.lock(remote.learner_id, remote.lesson_id):
            local = self.repository.fetch_progress(remote.learner_id, remote.lesson_id)
            if local is None:
                logger.info(f"No local record for {remote.key}, adopting remote snapshot")
                result = sync_merge.reconcile_progress(remote, remote)
            else:
                result = sync_merge.reconcile_progress(local, remote)
            self.repository.save_progress(result.record)
            return result

    def apply_remote_profile(self, remote: LearnerProfile) -> sync_merge.MergeResult:
        with self.repository.lock(remote.learner_id):
            local = self.repository.fetch_profile(remote.learner_id)
            result = sync_merge.reconcile_profile(local, remote)
            self.repository.save_profile(result.record)
            return result

    def apply_remote_achievements(self, learner_id: str, remote: List[Achievement]) -> List[Achievement]:
        with self.repository.lock(learner_id):
            merged = sync_merge.merge_achievements(self.repository.fetch_achievements(learner_id), remote)
            self.repository.save_achievements(learner_id, merged)
            return merged

    # ============= OWNERSHIP =============

    def _drop_pending_scores(self, learner_id: str) -> None:
        for key in [key for key in list(self._pending_scores) if key[0] == learner_id]:
            self._pending_scores.pop(key, None)

    def delete_learner(self, learner_id: str) -> DeletionReport:
        """Waits for in-flight lesson writes of the learner, then deletes everything it owns"""
        with self.repository.lock_learner(learner_id):
            self._drop_pending_scores(learner_id)
            return self.repository.delete_learner(learner_id)

    def reset_learner_progress(self, learner_id: str) -> DeletionReport:
        with self.repository.lock_learner(learner_id):
            self._drop_pending_scores(learner_id)
            return self.repository.reset_learner_progress(learner_id)
