"""
Lesson Phase State Machine

Handles:
- Creating the progress record on first interaction with a lesson
- Forward-only phase transitions (Hook -> Teach -> Practice -> Reward)
- Resume at last_completed_phase + 1 after the app is closed mid-lesson
- Explicit restart (clears the phase table; not a transition)
- Practice attempt policy (max attempts, then force-advance and reveal the answer)

Every function returns a new record; callers persist it after each transition.
"""
import logging
from datetime import datetime
from enum import Enum
from typing import List, NamedTuple, Optional

from progress_engine.config import get_settings
from progress_engine.errors import InvalidRecordState, OutOfOrderTransition
from progress_engine.schemas import (
    LessonAttemptProgress,
    LessonCompletedEvent,
    LessonState,
    Phase,
    PhaseTimestamps,
    as_utc,
)

logger = logging.getLogger(__name__)

# Phase recorded last -> state the attempt is in now
_STATE_AFTER = {
    None: LessonState.NOT_STARTED,
    Phase.HOOK: LessonState.TEACH,
    Phase.TEACH: LessonState.PRACTICE,
    Phase.PRACTICE: LessonState.REWARD,
    Phase.REWARD: LessonState.COMPLETED,
}


class PhaseTransition(NamedTuple):
    progress: LessonAttemptProgress
    event: Optional[LessonCompletedEvent]


def new_progress(learner_id: str, lesson_id: str, now: datetime) -> LessonAttemptProgress:
    """Fresh record for the first interaction with a lesson"""
    return LessonAttemptProgress(
        learner_id=learner_id,
        lesson_id=lesson_id,
        last_accessed_at=now,
    )


def current_state(progress: LessonAttemptProgress) -> LessonState:
    """
    State of the current attempt.

    NOT_STARTED until Hook is recorded, then the phase being played, and COMPLETED
    once Reward has been recorded.
    """
    return _STATE_AFTER[progress.last_completed_phase]


def expected_phase(progress: LessonAttemptProgress) -> Optional[Phase]:
    """The only phase transition_phase() will accept next"""
    if progress.last_completed_phase is None:
        return Phase.first()
    return progress.last_completed_phase.successor


def resume_phase(progress: LessonAttemptProgress) -> Optional[Phase]:
    """
    Phase to open when the learner re-enters the lesson.

    Returns None when the attempt already completed; replaying requires restart_lesson().
    """
    return expected_phase(progress)


def transition_phase(
    progress: LessonAttemptProgress,
    requested_phase: Phase,
    now: datetime,
) -> PhaseTransition:
    """
    Record requested_phase as completed.

    Args:
        progress: Current record
        requested_phase: Phase the lesson player just finished
        now: Completion time

    Returns:
        PhaseTransition(progress, event); event is a LessonCompletedEvent when
        requested_phase is Reward, otherwise None

    Raises:
        OutOfOrderTransition: requested_phase is not the successor of last_completed_phase
    """
    expected = expected_phase(progress)
    if requested_phase != expected:
        logger.warning(
            f"Rejected transition for {progress.key}: requested {requested_phase.value}, "
            f"expected {expected.value if expected else 'restart'}"
        )
        raise OutOfOrderTransition(requested_phase, expected)

    now = as_utc(now)
    table = progress.phase_timestamps
    latest = table.latest()
    recorded_at = now
    if latest is not None and now < latest:
        # Clock went backwards between phases; keep the table monotonic
        logger.debug(f"Clamping {requested_phase.value} timestamp for {progress.key} to {latest.isoformat()}")
        recorded_at = latest

    update = {
        "last_completed_phase": requested_phase,
        "phase_timestamps": table.with_phase(requested_phase, recorded_at),
        "last_accessed_at": max(now, progress.last_accessed_at) if progress.last_accessed_at else now,
    }

    if requested_phase == Phase.first():
        update["attempts"] = progress.attempts + 1
        logger.info(f"Attempt {update['attempts']} started for {progress.key}")

    event = None
    if requested_phase == Phase.REWARD:
        is_first_completion = not progress.is_completed
        update["is_completed"] = True
        # The earliest successful completion stays authoritative across replays
        update["completed_at"] = recorded_at if is_first_completion else progress.completed_at
        event = LessonCompletedEvent(
            learner_id=progress.learner_id,
            lesson_id=progress.lesson_id,
            completed_at=recorded_at,
            attempt_number=progress.attempts,
            is_first_completion=is_first_completion,
            is_first_attempt=progress.attempts == 1,
        )
        logger.info(f"Lesson {progress.lesson_id} completed by {progress.learner_id} (attempt {progress.attempts})")
    else:
        logger.debug(f"Phase {requested_phase.value} recorded for {progress.key}")

    return PhaseTransition(progress.model_copy(update=update), event)


def restart_lesson(progress: LessonAttemptProgress, now: datetime) -> LessonAttemptProgress:
    """
    Explicit restart: clears the phase table and last phase, back to NOT_STARTED.

    Completion flag, completion time, best score and XP are kept.
    """
    logger.info(f"Restarting lesson {progress.lesson_id} for {progress.learner_id}")
    return progress.model_copy(update={
        "last_completed_phase": None,
        "phase_timestamps": PhaseTimestamps(),
        "last_accessed_at": as_utc(now),
    })


def record_lesson_result(
    progress: LessonAttemptProgress,
    score: int,
    xp_earned: int,
) -> LessonAttemptProgress:
    """Store the outcome of a completed attempt, keeping the best score and XP"""
    if not progress.is_completed:
        raise InvalidRecordState("Cannot record a result before the lesson is completed", progress.key)
    return progress.model_copy(update={
        "score": max(progress.score, max(0, min(100, score))),
        "xp_earned": max(progress.xp_earned, max(0, xp_earned)),
    })


def validate_progress(progress: LessonAttemptProgress) -> List[InvalidRecordState]:
    """Integrity checks on a single record; returns the problems found"""
    issues = []
    table = progress.phase_timestamps
    latest_phase = table.latest_phase()

    if progress.is_completed and progress.completed_at is None:
        issues.append(InvalidRecordState("completed record has no completedAt", progress.key))
    if not progress.is_completed and progress.completed_at is not None:
        issues.append(InvalidRecordState("completedAt set on an incomplete record", progress.key))
    if latest_phase is not None and (
        progress.last_completed_phase is None or latest_phase.order > progress.last_completed_phase.order
    ):
        issues.append(InvalidRecordState(
            f"phase {latest_phase.value} recorded after lastCompletedPhase "
            f"{progress.last_completed_phase.value if progress.last_completed_phase else None}",
            progress.key,
        ))

    completed = table.completed_phases()
    for earlier, later in zip(completed, completed[1:]):
        if table.get(later) < table.get(earlier):
            issues.append(InvalidRecordState(
                f"phase {later.value} timestamp predates {earlier.value}", progress.key
            ))
    return issues


# ============================================================================
# Practice phase policy
# ============================================================================

class PracticeOutcome(str, Enum):
    CORRECT = "correct"
    RETRY = "retry"
    MAX_ATTEMPTS_EXCEEDED = "max_attempts_exceeded"

    @property
    def advances(self) -> bool:
        return self is not PracticeOutcome.RETRY

    @property
    def reveals_answer(self) -> bool:
        return self is PracticeOutcome.MAX_ATTEMPTS_EXCEEDED


class PracticeSession:
    """
    Attempt tracker for the questions of one Practice phase.

    Not persisted: leaving mid-practice resumes at the start of Practice.
    """

    def __init__(self, total_questions: int = 1, max_attempts: Optional[int] = None):
        if total_questions <= 0:
            raise ValueError("total_questions must be positive")
        if max_attempts is None:
            max_attempts = get_settings().PRACTICE_MAX_ATTEMPTS
        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        self.total_questions = total_questions
        self.max_attempts = max_attempts
        self.question_index = 0
        self.current_attempts = 0
        self.correct_answers = 0

    @property
    def is_finished(self) -> bool:
        return self.question_index >= self.total_questions

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.current_attempts)

    def submit_answer(self, correct: bool) -> PracticeOutcome:
        """Apply the external correctness signal for the current question"""
        if self.is_finished:
            raise ValueError("Practice already finished")

        self.current_attempts += 1
        if correct:
            outcome = PracticeOutcome.CORRECT
            self.correct_answers += 1
        elif self.current_attempts >= self.max_attempts:
            outcome = PracticeOutcome.MAX_ATTEMPTS_EXCEEDED
            logger.info(f"Max attempts ({self.max_attempts}) reached on question {self.question_index + 1}, revealing answer")
        else:
            return PracticeOutcome.RETRY

        self.question_index += 1
        self.current_attempts = 0
        return outcome

    def score(self) -> int:
        """Percentage of questions eventually answered correctly, truncated"""
        return self.correct_answers * 100 // self.total_questions
