"""
Sync Merge Engine - Reconciles local and remote snapshots of the same record

Handles:
- LessonAttemptProgress merge (progress never regresses)
- LearnerProfile merge (counters take the maximum)
- Achievement set merge (union by kind)
- Flagging data-integrity problems found on either side

Every field rule is symmetric, so merge(a, b) == merge(b, a) and merge(a, a) == a.
No I/O: the caller writes the result back under its per-key lock.
"""
import logging
from datetime import datetime
from typing import Iterable, List, NamedTuple, Optional, Tuple, Union

from progress_engine.errors import InvalidRecordState, InvariantViolation
from progress_engine.logic.phase_machine import validate_progress
from progress_engine.schemas import (
    Achievement,
    AchievementKind,
    LearnerProfile,
    LessonAttemptProgress,
    later_phase,
)

logger = logging.getLogger(__name__)

MergeableRecord = Union[LessonAttemptProgress, LearnerProfile]


class MergeResult(NamedTuple):
    record: MergeableRecord
    issues: List[InvalidRecordState]


def _later(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None or b is None:
        return a or b
    return max(a, b)


def _earlier(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None or b is None:
        return a or b
    return min(a, b)


def _sorted_issues(issues: Iterable[InvalidRecordState]) -> List[InvalidRecordState]:
    return sorted(set(issues), key=lambda issue: (issue.record_key or "", issue.reason))


def _log_issues(issues: List[InvalidRecordState]) -> None:
    for issue in issues:
        logger.warning(f"Merge flagged invalid record state: {issue}")


# ============================================================================
# LessonAttemptProgress
# ============================================================================

def _merged_attempts(local: LessonAttemptProgress, remote: LessonAttemptProgress) -> int:
    """Fewest attempts observed; a side that never started an attempt carries no information"""
    observed = [side.attempts for side in (local, remote) if side.attempts > 0]
    return min(observed) if observed else 0


def reconcile_progress(local: LessonAttemptProgress, remote: LessonAttemptProgress) -> MergeResult:
    """
    Merge two snapshots of one (learner, lesson) record and report integrity problems

    Rules:
        is_completed        OR
        completed_at        earliest among completed sides
        score, xp_earned    max
        attempts            min over sides with at least one attempt
        phase_timestamps    union, earlier timestamp per phase
        last_completed_phase later phase (raised to cover the merged table)
        last_accessed_at    later

    Raises:
        InvalidRecordState: the snapshots belong to different records
        InvariantViolation: the merged record is completed but no completion time
            can be derived from either side
    """
    if (local.learner_id, local.lesson_id) != (remote.learner_id, remote.lesson_id):
        raise InvalidRecordState(
            f"Cannot merge progress for different records: {local.key} vs {remote.key}"
        )

    key = local.key
    issues = validate_progress(local) + validate_progress(remote)

    table = local.phase_timestamps.merge(remote.phase_timestamps)
    last_phase = later_phase(local.last_completed_phase, remote.last_completed_phase)
    table_phase = table.latest_phase()
    if table_phase is not None and later_phase(last_phase, table_phase) != last_phase:
        issues.append(InvalidRecordState(
            f"lastCompletedPhase raised to {table_phase.value} to cover merged phase table", key
        ))
        last_phase = table_phase

    last_accessed_at = _later(local.last_accessed_at, remote.last_accessed_at)
    is_completed = local.is_completed or remote.is_completed

    completed_at = None
    if is_completed:
        for side in (local, remote):
            if side.is_completed and side.completed_at is not None:
                completed_at = _earlier(completed_at, side.completed_at)
        if completed_at is None:
            # Neither completed side carries a completion time; fall back to the
            # best evidence of when Reward was reached
            completed_at = table.reward or table.latest() or last_accessed_at
            if completed_at is None:
                raise InvariantViolation(f"[{key}] completed record with no derivable completedAt")
            issues.append(InvalidRecordState(
                f"completedAt missing on both sides, derived as {completed_at.isoformat()}", key
            ))

    merged = LessonAttemptProgress(
        lesson_id=local.lesson_id,
        learner_id=local.learner_id,
        is_completed=is_completed,
        completed_at=completed_at,
        score=max(local.score, remote.score),
        xp_earned=max(local.xp_earned, remote.xp_earned),
        attempts=_merged_attempts(local, remote),
        last_completed_phase=last_phase,
        phase_timestamps=table,
        last_accessed_at=last_accessed_at,
    )

    issues = _sorted_issues(issues)
    _log_issues(issues)
    logger.debug(
        f"Merged progress {key}: completed={merged.is_completed}, score={merged.score}, "
        f"attempts={merged.attempts}, phase={merged.last_completed_phase}"
    )
    return MergeResult(merged, issues)


def merge_progress(local: LessonAttemptProgress, remote: LessonAttemptProgress) -> LessonAttemptProgress:
    return reconcile_progress(local, remote).record


# ============================================================================
# LearnerProfile
# ============================================================================

def _freeze_state(local: LearnerProfile, remote: LearnerProfile) -> Tuple[int, Optional[datetime]]:
    """
    Freeze balance and grant date from the side that saw the latest grant.

    Same grant date on both sides: the smaller balance, since the other side has
    not yet seen a consumption.
    """
    def grant_key(profile: LearnerProfile):
        granted = profile.last_freeze_granted_at
        return (granted is not None, granted)

    local_key, remote_key = grant_key(local), grant_key(remote)
    if local_key == remote_key:
        return min(local.streak_freeze_balance, remote.streak_freeze_balance), local.last_freeze_granted_at
    newer = local if local_key > remote_key else remote
    return newer.streak_freeze_balance, newer.last_freeze_granted_at


def _profile_issues(profile: LearnerProfile) -> List[InvalidRecordState]:
    issues = []
    if profile.current_streak > profile.longest_streak:
        issues.append(InvalidRecordState(
            f"currentStreak {profile.current_streak} exceeds longestStreak {profile.longest_streak}",
            profile.learner_id,
        ))
    if profile.total_lessons_completed > 0 and profile.last_lesson_completed_at is None:
        issues.append(InvalidRecordState(
            "lessons completed but lastLessonCompletedAt is null", profile.learner_id
        ))
    return issues


def reconcile_profile(local: LearnerProfile, remote: LearnerProfile) -> MergeResult:
    """
    Merge two snapshots of one learner's aggregate

    Counters take the maximum; longest_streak also covers the merged current streak.

    Raises:
        InvalidRecordState: the snapshots belong to different learners
    """
    if local.learner_id != remote.learner_id:
        raise InvalidRecordState(
            f"Cannot merge profiles of different learners: {local.learner_id} vs {remote.learner_id}"
        )

    issues = _profile_issues(local) + _profile_issues(remote)
    current_streak = max(local.current_streak, remote.current_streak)
    freeze_balance, freeze_granted_at = _freeze_state(local, remote)

    merged = LearnerProfile(
        learner_id=local.learner_id,
        total_xp=max(local.total_xp, remote.total_xp),
        current_streak=current_streak,
        longest_streak=max(local.longest_streak, remote.longest_streak, current_streak),
        total_lessons_completed=max(local.total_lessons_completed, remote.total_lessons_completed),
        last_lesson_completed_at=_later(local.last_lesson_completed_at, remote.last_lesson_completed_at),
        streak_freeze_balance=freeze_balance,
        last_freeze_granted_at=freeze_granted_at,
    )

    issues = _sorted_issues(issues)
    _log_issues(issues)
    logger.debug(
        f"Merged profile {merged.learner_id}: xp={merged.total_xp}, streak={merged.current_streak}, "
        f"lessons={merged.total_lessons_completed}"
    )
    return MergeResult(merged, issues)


def merge_profile(local: LearnerProfile, remote: LearnerProfile) -> LearnerProfile:
    return reconcile_profile(local, remote).record


# ============================================================================
# Achievements
# ============================================================================

def merge_achievement(local: Achievement, remote: Achievement) -> Achievement:
    """Same kind on both sides: earliest unlock wins, seen on either side stays seen"""
    if (local.learner_id, local.kind) != (remote.learner_id, remote.kind):
        raise InvalidRecordState(
            f"Cannot merge different achievements: {local.learner_id}:{local.kind.value} "
            f"vs {remote.learner_id}:{remote.kind.value}"
        )
    return Achievement(
        learner_id=local.learner_id,
        kind=local.kind,
        unlocked_at=min(local.unlocked_at, remote.unlocked_at),
        seen=local.seen or remote.seen,
    )


def merge_achievements(
    local: Iterable[Achievement],
    remote: Iterable[Achievement],
) -> List[Achievement]:
    """
    Union of two achievement sets of one learner, one record per kind

    Returns:
        Records ordered by AchievementKind declaration order
    """
    by_kind = {}
    learner_ids = set()
    for achievement in list(local) + list(remote):
        learner_ids.add(achievement.learner_id)
        existing = by_kind.get(achievement.kind)
        by_kind[achievement.kind] = (
            achievement if existing is None else merge_achievement(existing, achievement)
        )

    if len(learner_ids) > 1:
        raise InvalidRecordState(f"Cannot merge achievements of different learners: {sorted(learner_ids)}")

    return [by_kind[kind] for kind in AchievementKind if kind in by_kind]


# ============================================================================
# Dispatch
# ============================================================================

def merge(local, remote):
    """
    Merge any two snapshots of the same record (MAIN ENTRY POINT)

    Accepts a pair of LessonAttemptProgress, LearnerProfile, Achievement, or two
    achievement collections.
    """
    if isinstance(local, LessonAttemptProgress) and isinstance(remote, LessonAttemptProgress):
        return merge_progress(local, remote)
    if isinstance(local, LearnerProfile) and isinstance(remote, LearnerProfile):
        return merge_profile(local, remote)
    if isinstance(local, Achievement) and isinstance(remote, Achievement):
        return merge_achievement(local, remote)
    if isinstance(local, (list, tuple)) and isinstance(remote, (list, tuple)):
        return merge_achievements(local, remote)
    raise TypeError(f"Cannot merge {type(local).__name__} with {type(remote).__name__}")
