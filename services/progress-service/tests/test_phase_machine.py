"""
Tests for the lesson phase state machine

Validates:
- Forward-only transitions and OutOfOrderTransition
- Resume at last completed phase + 1
- Explicit restart and replays
- Practice attempt policy and scoring
- Record integrity checks
"""
import pytest
from datetime import timedelta

from progress_engine.errors import InvalidRecordState, OutOfOrderTransition
from progress_engine.logic.phase_machine import (
    PracticeOutcome,
    PracticeSession,
    current_state,
    expected_phase,
    new_progress,
    record_lesson_result,
    restart_lesson,
    resume_phase,
    transition_phase,
    validate_progress,
)
from progress_engine.schemas import LessonAttemptProgress, LessonState, Phase


@pytest.fixture
def fresh(at):
    return new_progress("child-1", "wudu-1", at(18, 9))


def play(progress, phases, start):
    """Record phases one minute apart; returns (progress, last_event)"""
    event = None
    for offset, phase in enumerate(phases):
        progress, event = transition_phase(progress, phase, start + timedelta(minutes=offset))
    return progress, event


class TestTransitionPhase:
    """Tests for transition_phase"""

    def test_new_record_is_not_started(self, fresh):
        """A new record expects Hook first"""
        assert current_state(fresh) == LessonState.NOT_STARTED
        assert expected_phase(fresh) == Phase.HOOK
        assert fresh.attempts == 0
        assert fresh.phase_timestamps.is_empty()

    def test_full_lesson_completes(self, fresh, at):
        """Hook -> Teach -> Practice -> Reward completes the lesson and emits the event"""
        progress, event = play(fresh, list(Phase), at(18, 10))

        assert current_state(progress) == LessonState.COMPLETED
        assert progress.is_completed is True
        assert progress.attempts == 1
        assert progress.last_completed_phase == Phase.REWARD
        assert progress.completed_at == progress.phase_timestamps.reward
        assert progress.phase_timestamps.completed_phases() == list(Phase)

        assert event is not None
        assert event.lesson_id == "wudu-1"
        assert event.is_first_completion is True
        assert event.is_first_attempt is True
        assert event.attempt_number == 1

    def test_only_reward_emits_event(self, fresh, at):
        progress, event = play(fresh, [Phase.HOOK, Phase.TEACH, Phase.PRACTICE], at(18, 10))
        assert event is None
        assert current_state(progress) == LessonState.REWARD
        assert progress.is_completed is False

    def test_skipping_a_phase_is_rejected(self, fresh, at):
        """Teach cannot be recorded before Hook"""
        with pytest.raises(OutOfOrderTransition) as exc_info:
            transition_phase(fresh, Phase.TEACH, at(18, 10))

        assert exc_info.value.requested == Phase.TEACH
        assert exc_info.value.expected == Phase.HOOK

    def test_repeating_a_phase_is_rejected(self, fresh, at):
        progress, _ = transition_phase(fresh, Phase.HOOK, at(18, 10))
        with pytest.raises(OutOfOrderTransition):
            transition_phase(progress, Phase.HOOK, at(18, 11))

    def test_completed_lesson_requires_restart(self, fresh, at):
        progress, _ = play(fresh, list(Phase), at(18, 10))
        assert resume_phase(progress) is None

        with pytest.raises(OutOfOrderTransition) as exc_info:
            transition_phase(progress, Phase.HOOK, at(18, 11))
        assert exc_info.value.expected is None

    @pytest.mark.parametrize("recorded", [[], [Phase.HOOK], [Phase.HOOK, Phase.TEACH],
                                          [Phase.HOOK, Phase.TEACH, Phase.PRACTICE]])
    def test_only_the_successor_is_accepted(self, fresh, at, recorded):
        """No request can move lastCompletedPhase anywhere but one step forward"""
        progress, _ = play(fresh, recorded, at(18, 10))
        successor = expected_phase(progress)

        for phase in Phase:
            if phase == successor:
                advanced, _ = transition_phase(progress, phase, at(18, 11))
                assert advanced.last_completed_phase == phase
            else:
                with pytest.raises(OutOfOrderTransition):
                    transition_phase(progress, phase, at(18, 11))

    def test_clock_going_backwards_is_clamped(self, fresh, at):
        """Phase timestamps never go backwards within an attempt"""
        progress, _ = transition_phase(fresh, Phase.HOOK, at(18, 10))
        progress, _ = transition_phase(progress, Phase.TEACH, at(18, 9))

        assert progress.phase_timestamps.teach == at(18, 10)
        assert validate_progress(progress) == []


class TestResume:
    """Tests for resuming a partially played lesson"""

    def test_resume_at_next_phase(self, fresh, at):
        progress, _ = play(fresh, [Phase.HOOK, Phase.TEACH], at(18, 10))
        assert resume_phase(progress) == Phase.PRACTICE

    def test_resume_survives_persistence(self, fresh, at):
        """The stored camelCase document resumes at the same phase"""
        progress, _ = play(fresh, [Phase.HOOK, Phase.TEACH], at(18, 10))
        stored = progress.model_dump(mode="json", by_alias=True)

        reloaded = LessonAttemptProgress.model_validate(stored)

        assert stored["lastCompletedPhase"] == "teach"
        assert reloaded == progress
        assert resume_phase(reloaded) == Phase.PRACTICE


class TestRestart:
    """Tests for explicit restart and replays"""

    def test_restart_clears_phases(self, fresh, at):
        progress, _ = play(fresh, [Phase.HOOK, Phase.TEACH], at(18, 10))
        restarted = restart_lesson(progress, at(18, 11))

        assert current_state(restarted) == LessonState.NOT_STARTED
        assert restarted.last_completed_phase is None
        assert restarted.phase_timestamps.is_empty()
        assert restarted.attempts == 1

    def test_replay_keeps_first_completion(self, fresh, at):
        """A replay counts a new attempt but the first completedAt stays authoritative"""
        first, _ = play(fresh, list(Phase), at(18, 10))
        first = record_lesson_result(first, 80, 33)

        replay = restart_lesson(first, at(19, 9))
        replay, event = play(replay, list(Phase), at(19, 10))

        assert replay.attempts == 2
        assert replay.is_completed is True
        assert replay.completed_at == first.completed_at
        assert replay.score == 80
        assert event.is_first_completion is False
        assert event.is_first_attempt is False
        assert event.attempt_number == 2


class TestRecordLessonResult:
    """Tests for storing the outcome of a completed attempt"""

    def test_keeps_best_score_and_xp(self, fresh, at):
        progress, _ = play(fresh, list(Phase), at(18, 10))
        progress = record_lesson_result(progress, 90, 40)
        progress = record_lesson_result(progress, 70, 22)

        assert progress.score == 90
        assert progress.xp_earned == 40

    def test_score_is_clamped(self, fresh, at):
        progress, _ = play(fresh, list(Phase), at(18, 10))
        assert record_lesson_result(progress, 150, 10).score == 100

    def test_requires_completion(self, fresh):
        with pytest.raises(InvalidRecordState):
            record_lesson_result(fresh, 100, 20)


class TestValidateProgress:
    """Tests for record integrity checks"""

    def test_valid_record_has_no_issues(self, fresh, at):
        progress, _ = play(fresh, list(Phase), at(18, 10))
        assert validate_progress(progress) == []

    def test_completed_without_timestamp(self):
        progress = LessonAttemptProgress(lesson_id="wudu-1", learner_id="child-1", is_completed=True)

        issues = validate_progress(progress)

        assert InvalidRecordState("completed record has no completedAt", "child-1:wudu-1") in issues

    def test_phase_recorded_after_last_phase(self, at):
        progress = LessonAttemptProgress(
            lesson_id="wudu-1",
            learner_id="child-1",
            last_completed_phase="hook",
            phase_timestamps={"hook": at(18, 10), "teach": at(18, 11)},
        )

        issues = validate_progress(progress)

        assert len(issues) == 1
        assert "teach" in issues[0].reason


class TestPracticeSession:
    """Tests for the practice attempt policy"""

    def test_correct_first_try(self):
        session = PracticeSession(total_questions=1)

        outcome = session.submit_answer(True)

        assert outcome == PracticeOutcome.CORRECT
        assert outcome.advances is True
        assert session.is_finished is True
        assert session.score() == 100

    def test_max_attempts_reveals_answer(self):
        """Three wrong answers force-advance and reveal the answer"""
        session = PracticeSession(total_questions=1)

        outcomes = [session.submit_answer(False) for _ in range(3)]

        assert outcomes == [PracticeOutcome.RETRY, PracticeOutcome.RETRY,
                            PracticeOutcome.MAX_ATTEMPTS_EXCEEDED]
        assert outcomes[-1].reveals_answer is True
        assert session.is_finished is True
        assert session.score() == 0

    def test_late_correct_answer_counts(self):
        session = PracticeSession(total_questions=2)

        session.submit_answer(False)
        assert session.attempts_remaining == 2
        assert session.submit_answer(True) == PracticeOutcome.CORRECT
        for _ in range(3):
            session.submit_answer(False)

        assert session.is_finished is True
        assert session.score() == 50

    def test_score_is_truncated(self):
        session = PracticeSession(total_questions=3)
        session.submit_answer(True)
        for _ in range(6):
            session.submit_answer(False)

        assert session.score() == 33

    def test_answer_after_finish_is_rejected(self):
        session = PracticeSession(total_questions=1)
        session.submit_answer(True)

        with pytest.raises(ValueError):
            session.submit_answer(True)

    def test_max_attempts_from_settings(self, override_settings):
        override_settings(PRACTICE_MAX_ATTEMPTS=2)
        session = PracticeSession(total_questions=1)

        assert session.submit_answer(False) == PracticeOutcome.RETRY
        assert session.submit_answer(False) == PracticeOutcome.MAX_ATTEMPTS_EXCEEDED

    def test_invalid_question_count(self):
        with pytest.raises(ValueError):
            PracticeSession(total_questions=0)

    def test_explicit_max_attempts(self):
        session = PracticeSession(total_questions=1, max_attempts=1)

        assert session.submit_answer(False) == PracticeOutcome.MAX_ATTEMPTS_EXCEEDED

    @pytest.mark.parametrize("max_attempts", [0, -1])
    def test_invalid_max_attempts(self, max_attempts):
        with pytest.raises(ValueError):
            PracticeSession(total_questions=1, max_attempts=max_attempts)
