"""
Tests for the streak engine

Validates:
- Consecutive day increments, same-day idempotence, resets
- Freeze consumption and grant window
- Local day boundaries with timezones
- Milestone events
- App-launch expiry
"""
import pytest
from datetime import datetime, timedelta, timezone

from progress_engine.errors import FreezeAlreadyGranted
from progress_engine.logic.streak_service import (
    calculate_streak_state,
    can_grant_freeze,
    check_expired_streak,
    grant_streak_freeze,
    hours_remaining_today,
    is_completed_today,
    local_day,
    next_freeze_grant_at,
    next_milestone,
    record_completion,
)
from progress_engine.schemas import LearnerProfile


def complete_on(profile, days, at, tz=None):
    events = []
    for day in days:
        profile, new_events = record_completion(profile, at(day), tz)
        events.extend(new_events)
    return profile, events


class TestRecordCompletion:
    """Tests for the streak algorithm"""

    def test_first_completion_starts_streak(self, profile, at):
        updated, events = record_completion(profile, at(1))

        assert updated.current_streak == 1
        assert updated.longest_streak == 1
        assert updated.last_lesson_completed_at == at(1)
        assert events == []

    def test_three_consecutive_days(self, profile, at):
        updated, _ = complete_on(profile, [1, 2, 3], at)

        assert updated.current_streak == 3
        assert updated.longest_streak == 3

    def test_same_day_does_not_increment(self, profile, at):
        updated, _ = record_completion(profile, at(1, 9))
        updated, _ = record_completion(updated, at(1, 18))

        assert updated.current_streak == 1
        assert updated.last_lesson_completed_at == at(1, 18)
        assert calculate_streak_state(updated, at(1, 20))[2] == "same_day"

    def test_missed_day_without_freeze_resets(self, profile, at):
        """Days 1-3, skip day 4, day 5 resets to 1"""
        updated, _ = complete_on(profile, [1, 2, 3, 5], at)

        assert updated.current_streak == 1
        assert updated.longest_streak == 3

    def test_missed_day_with_freeze_is_absorbed(self, profile, at):
        """Days 1-3, skip day 4 holding one freeze, day 5 continues to 4"""
        updated, _ = complete_on(profile, [1, 2, 3], at)
        updated = updated.model_copy(update={"streak_freeze_balance": 1})

        updated, _ = record_completion(updated, at(5))

        assert updated.current_streak == 4
        assert updated.streak_freeze_balance == 0
        assert updated.longest_streak == 4

    def test_two_missed_days_reset_even_with_freeze(self, profile, at):
        updated, _ = complete_on(profile, [1, 2], at)
        updated = updated.model_copy(update={"streak_freeze_balance": 1})

        updated, _ = record_completion(updated, at(5))

        assert updated.current_streak == 1
        assert updated.streak_freeze_balance == 1

    def test_freeze_granted_after_expiry_is_kept(self, profile, at):
        """Launch on day 5 expires the streak; a freeze granted afterwards is not spent on it"""
        updated, _ = complete_on(profile, [1, 2, 3], at)
        updated = check_expired_streak(updated, at(5, 8))
        updated = grant_streak_freeze(updated, at(5, 9))

        assert calculate_streak_state(updated, at(5, 10)) == (1, 0, "streak_reset")

        updated, _ = record_completion(updated, at(5, 10))

        assert updated.current_streak == 1
        assert updated.streak_freeze_balance == 1
        assert updated.longest_streak == 3

    def test_earlier_completion_keeps_last_timestamp(self, profile, at):
        """A late-arriving earlier completion never moves lastLessonCompletedAt back"""
        updated, _ = record_completion(profile, at(2, 15))
        updated, _ = record_completion(updated, at(2, 8))

        assert updated.current_streak == 1
        assert updated.last_lesson_completed_at == at(2, 15)

    def test_current_never_exceeds_longest(self, profile, at):
        updated, _ = complete_on(profile, [1, 2, 3, 4, 6, 7], at)
        assert updated.current_streak <= updated.longest_streak
        assert updated.longest_streak == 4


class TestLocalDay:
    """Tests for day boundaries in the learner's timezone"""

    def test_same_local_day_in_learner_zone(self):
        """20:30 and 23:00 in Sao Paulo are the same day although UTC crosses midnight"""
        last = datetime(2025, 11, 18, 23, 30, tzinfo=timezone.utc)
        now = datetime(2025, 11, 19, 2, 0, tzinfo=timezone.utc)
        profile = LearnerProfile(learner_id="child-1", current_streak=4, longest_streak=4,
                                 last_lesson_completed_at=last)

        in_sao_paulo, _ = record_completion(profile, now, "America/Sao_Paulo")
        in_utc, _ = record_completion(profile, now, "UTC")

        assert in_sao_paulo.current_streak == 4
        assert in_utc.current_streak == 5

    def test_default_timezone_from_settings(self, override_settings):
        override_settings(DEFAULT_TIMEZONE="America/Sao_Paulo")
        moment = datetime(2025, 11, 19, 2, 0, tzinfo=timezone.utc)

        assert local_day(moment).day == 18

    def test_invalid_timezone_falls_back_to_utc(self):
        moment = datetime(2025, 11, 19, 2, 0, tzinfo=timezone.utc)
        assert local_day(moment, "Not/AZone") == moment.date()

    def test_naive_datetime_is_utc(self):
        assert local_day(datetime(2025, 11, 19, 23, 0), "UTC").day == 19


class TestMilestones:
    """Tests for streak milestone events"""

    def test_reaching_seven_days_reports_milestone(self, at):
        profile = LearnerProfile(learner_id="child-1", current_streak=6, longest_streak=6,
                                 last_lesson_completed_at=at(6))

        updated, events = record_completion(profile, at(7))

        assert updated.current_streak == 7
        assert len(events) == 1
        assert events[0].milestone_days == 7
        assert events[0].current_streak == 7

    def test_no_milestone_on_same_day(self, at):
        profile = LearnerProfile(learner_id="child-1", current_streak=7, longest_streak=7,
                                 last_lesson_completed_at=at(7, 9))

        _, events = record_completion(profile, at(7, 18))

        assert events == []

    def test_configured_milestones(self, profile, at, override_settings):
        override_settings(STREAK_MILESTONES="[2, 3]")

        _, events = complete_on(profile, [1, 2, 3], at)

        assert [e.milestone_days for e in events] == [2, 3]

    def test_next_milestone(self):
        assert next_milestone(5) == 7
        assert next_milestone(7) == 30
        assert next_milestone(100) is None


class TestStreakFreeze:
    """Tests for streak freeze grants"""

    def test_first_grant(self, profile, at):
        updated = grant_streak_freeze(profile, at(1))

        assert updated.streak_freeze_balance == 1
        assert updated.last_freeze_granted_at == at(1)

    def test_second_grant_in_window_is_rejected(self, profile, at):
        granted = grant_streak_freeze(profile, at(1))

        with pytest.raises(FreezeAlreadyGranted) as exc_info:
            grant_streak_freeze(granted, at(5))

        assert exc_info.value.next_grant_at == at(1) + timedelta(days=7)
        assert granted.streak_freeze_balance == 1

    def test_grant_after_window(self, profile, at):
        granted = grant_streak_freeze(profile, at(1))

        assert can_grant_freeze(granted, at(8)) is True
        assert grant_streak_freeze(granted, at(8)).streak_freeze_balance == 2

    def test_next_grant_unset_when_never_granted(self, profile):
        assert next_freeze_grant_at(profile) is None


class TestExpiredStreak:
    """Tests for the app-launch streak check"""

    @pytest.fixture
    def active(self, at):
        return LearnerProfile(learner_id="child-1", current_streak=5, longest_streak=5,
                              last_lesson_completed_at=at(10))

    def test_yesterday_keeps_streak(self, active, at):
        assert check_expired_streak(active, at(11)).current_streak == 5

    def test_missed_day_expires_streak(self, active, at):
        expired = check_expired_streak(active, at(12))

        assert expired.current_streak == 0
        assert expired.longest_streak == 5

    def test_pending_freeze_protects_one_missed_day(self, active, at):
        frozen = active.model_copy(update={"streak_freeze_balance": 1})

        assert check_expired_streak(frozen, at(12)).current_streak == 5
        assert check_expired_streak(frozen, at(13)).current_streak == 0


class TestTodayHelpers:
    """Tests for today-related helpers"""

    def test_is_completed_today(self, at):
        profile = LearnerProfile(learner_id="child-1", current_streak=1, longest_streak=1,
                                 last_lesson_completed_at=at(10, 8))

        assert is_completed_today(profile, at(10, 20)) is True
        assert is_completed_today(profile, at(11, 8)) is False

    def test_hours_remaining_today(self, at):
        assert hours_remaining_today(at(10, 20, 30), "UTC") == 3

    def test_hours_remaining_on_dst_change(self, at):
        """2 Nov 2025 in New York has 25 hours; 00:30 EDT leaves 24 full hours"""
        assert hours_remaining_today(at(2, 4, 30), "America/New_York") == 24
