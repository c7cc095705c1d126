"""
Streak Service - Business logic for the daily lesson streak

Handles:
- Local calendar day resolution with timezone awareness
- Streak state on lesson completion (same day, consecutive day, freeze, reset)
- Streak freeze grants (one per rolling window)
- Milestone detection for the achievement evaluator
- App-launch expiry check for streaks that can no longer continue
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

from progress_engine.config import get_settings
from progress_engine.errors import FreezeAlreadyGranted
from progress_engine.schemas import LearnerProfile, StreakMilestoneEvent, as_utc

logger = logging.getLogger(__name__)

TimezoneLike = Union[str, ZoneInfo, timezone, None]

# Gap in calendar days between the last completion and today
SAME_DAY = 0
NEXT_DAY = 1
ONE_MISSED_DAY = 2


def resolve_timezone(tz: TimezoneLike = None):
    """
    Resolve the learner's zone, falling back to DEFAULT_TIMEZONE and then UTC

    Args:
        tz: IANA name (e.g. "Asia/Karachi"), a tzinfo, or None
    """
    if tz is not None and not isinstance(tz, str):
        return tz
    name = tz or get_settings().DEFAULT_TIMEZONE
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        logger.warning(f"Invalid timezone {name}, falling back to UTC: {e}")
        return timezone.utc


def local_day(moment: datetime, tz: TimezoneLike = None) -> date:
    """
    Calendar date of moment in the learner's timezone

    Example:
        >>> local_day(datetime(2025, 11, 19, 2, 0, tzinfo=timezone.utc), "America/Sao_Paulo")
        datetime.date(2025, 11, 18)
    """
    return as_utc(moment).astimezone(resolve_timezone(tz)).date()


def days_between(earlier: datetime, later: datetime, tz: TimezoneLike = None) -> int:
    """Number of calendar-day boundaries between two moments in the learner's zone"""
    return (local_day(later, tz) - local_day(earlier, tz)).days


def milestones_crossed(previous_streak: int, new_streak: int) -> List[int]:
    """Configured milestones reached by moving from previous_streak to new_streak"""
    return [
        days for days in sorted(get_settings().STREAK_MILESTONES)
        if previous_streak < days <= new_streak
    ]


def next_milestone(current_streak: int) -> Optional[int]:
    """Next milestone to aim for, or None past the last one"""
    for days in sorted(get_settings().STREAK_MILESTONES):
        if days > current_streak:
            return days
    return None


def calculate_streak_state(
    profile: LearnerProfile,
    now: datetime,
    tz: TimezoneLike = None,
) -> Tuple[int, int, str]:
    """
    New streak value for a completion at now

    Returns:
        Tuple of (new_streak, freezes_consumed, reason)

    Logic:
        - No previous completion: streak starts at 1
        - Same local day: unchanged
        - Previous local day: +1
        - Exactly one missed day with a freeze available: consume it, +1
          (only while the streak is still alive; an expired streak keeps its freeze)
        - Otherwise: reset to 1
    """
    current = profile.current_streak
    last = profile.last_lesson_completed_at

    if last is None:
        return 1, 0, "first_completion"

    gap = days_between(last, now, tz)

    if gap <= SAME_DAY:
        if gap < SAME_DAY:
            logger.warning(
                f"Completion at {now.isoformat()} predates last completion "
                f"{last.isoformat()} for {profile.learner_id}; treating as same day"
            )
        return current, 0, "same_day"

    if gap == NEXT_DAY:
        return current + 1, 0, "consecutive_day"

    if gap == ONE_MISSED_DAY and profile.streak_freeze_balance > 0 and current > 0:
        return current + 1, 1, "freeze_consumed"

    return 1, 0, "streak_reset"


def record_completion(
    profile: LearnerProfile,
    now: datetime,
    tz: TimezoneLike = None,
) -> Tuple[LearnerProfile, List[StreakMilestoneEvent]]:
    """
    Apply a "lesson reached Completed" event to the learner's streak (MAIN ENTRY POINT)

    Idempotent per local day: later completions on the same day leave the streak alone.

    Args:
        profile: Learner aggregate before the completion
        now: Completion time
        tz: Learner's timezone (DEFAULT_TIMEZONE when omitted)

    Returns:
        Tuple of (updated_profile, milestone_events)
    """
    now = as_utc(now)
    previous = profile.current_streak
    new_streak, freezes_used, reason = calculate_streak_state(profile, now, tz)

    last = profile.last_lesson_completed_at
    update = {
        "current_streak": new_streak,
        "longest_streak": max(profile.longest_streak, new_streak),
        "streak_freeze_balance": profile.streak_freeze_balance - freezes_used,
        "last_lesson_completed_at": max(last, now) if last else now,
    }

    if reason == "same_day":
        logger.debug(f"Completion on same day for {profile.learner_id}, streak maintained at {new_streak}")
    elif reason == "streak_reset":
        logger.info(f"Streak reset for {profile.learner_id}: {previous} -> 1")
    elif reason == "freeze_consumed":
        logger.info(
            f"Freeze consumed for {profile.learner_id}: streak {previous} -> {new_streak}, "
            f"{update['streak_freeze_balance']} freezes left"
        )
    else:
        logger.info(f"Streak updated for {profile.learner_id}: {previous} -> {new_streak} ({reason})")

    if update["longest_streak"] > profile.longest_streak:
        logger.info(f"New longest streak for {profile.learner_id}: {update['longest_streak']}")

    events = [
        StreakMilestoneEvent(
            learner_id=profile.learner_id,
            milestone_days=days,
            current_streak=new_streak,
            reached_at=now,
        )
        for days in milestones_crossed(previous, new_streak)
    ]
    for event in events:
        logger.info(f"Streak milestone reached for {profile.learner_id}: {event.milestone_days} days")

    return profile.model_copy(update=update), events


# ============= STREAK FREEZES =============

def next_freeze_grant_at(profile: LearnerProfile) -> Optional[datetime]:
    """Earliest moment another freeze may be granted; None if never granted"""
    if profile.last_freeze_granted_at is None:
        return None
    return profile.last_freeze_granted_at + timedelta(days=get_settings().FREEZE_GRANT_WINDOW_DAYS)


def can_grant_freeze(profile: LearnerProfile, now: datetime) -> bool:
    """True when no freeze was granted within the rolling window ending at now"""
    available_at = next_freeze_grant_at(profile)
    return available_at is None or as_utc(now) >= available_at


def grant_streak_freeze(profile: LearnerProfile, now: datetime) -> LearnerProfile:
    """
    Grant one streak freeze (parent action)

    Raises:
        FreezeAlreadyGranted: a freeze was already granted in the current window;
            the profile is left unchanged
    """
    now = as_utc(now)
    if not can_grant_freeze(profile, now):
        logger.info(f"Freeze grant refused for {profile.learner_id}: already granted this window")
        raise FreezeAlreadyGranted(profile.learner_id, next_freeze_grant_at(profile))

    balance = profile.streak_freeze_balance + 1
    logger.info(f"Streak freeze granted to {profile.learner_id}, balance now {balance}")
    return profile.model_copy(update={
        "streak_freeze_balance": balance,
        "last_freeze_granted_at": now,
    })


# ============= APP LAUNCH CHECKS =============

def check_expired_streak(
    profile: LearnerProfile,
    now: datetime,
    tz: TimezoneLike = None,
) -> LearnerProfile:
    """
    Drop the displayed streak to 0 once it can no longer be continued

    A streak survives while today's completion would still extend it: the last
    completion was today or yesterday, or exactly one day was missed and a freeze
    is available. longest_streak is never touched.
    """
    last = profile.last_lesson_completed_at
    if last is None or profile.current_streak == 0:
        return profile

    gap = days_between(last, now, tz)
    if gap <= NEXT_DAY:
        return profile
    if gap == ONE_MISSED_DAY and profile.streak_freeze_balance > 0:
        logger.debug(f"Streak for {profile.learner_id} protected by pending freeze")
        return profile

    logger.info(f"Streak expired for {profile.learner_id} after {gap} days, reset to 0")
    return profile.model_copy(update={"current_streak": 0})


def is_completed_today(profile: LearnerProfile, now: datetime, tz: TimezoneLike = None) -> bool:
    last = profile.last_lesson_completed_at
    return last is not None and local_day(last, tz) == local_day(now, tz)


def hours_remaining_today(now: datetime, tz: TimezoneLike = None) -> int:
    """Full hours left before the learner's local day ends"""
    zone = resolve_timezone(tz)
    local_now = as_utc(now).astimezone(zone)
    end_of_day = datetime.combine(local_now.date(), time(23, 59, 59), tzinfo=zone)
    # Same-zone subtraction ignores offset changes; subtract in UTC
    remaining = end_of_day.astimezone(timezone.utc) - local_now.astimezone(timezone.utc)
    return max(0, int(remaining.total_seconds() // 3600))
