"""
Event Listeners for the progress pipeline

A LessonCompletedEvent from the phase machine fans out, in order, to:
1. Streak engine (record_completion)
2. XP calculator (uses the streak after step 1)
3. Profile totals (XP, lessons completed on first completion only)
4. Achievement evaluator (re-checks every locked kind, credits rewards)

Listeners are pure over the records they receive and return the updated records;
persisting them is the caller's job. Errors propagate: a half-applied completion
must not be written back.
"""
import logging
from typing import Iterable, List, NamedTuple, Optional

from progress_engine.logic import achievement_service, streak_service, xp_calculator
from progress_engine.logic.streak_service import TimezoneLike
from progress_engine.schemas import (
    Achievement,
    AchievementContext,
    AchievementUnlockedEvent,
    LearnerProfile,
    LessonCompletedEvent,
    StreakMilestoneEvent,
)

logger = logging.getLogger(__name__)


class CompletionOutcome(NamedTuple):
    profile: LearnerProfile
    xp_awarded: int
    completes_category: bool
    milestone_events: List[StreakMilestoneEvent]
    new_achievements: List[Achievement]
    achievement_events: List[AchievementUnlockedEvent]


class AchievementOutcome(NamedTuple):
    profile: LearnerProfile
    new_achievements: List[Achievement]
    achievement_events: List[AchievementUnlockedEvent]


# ============================================================================
# Listener: Lesson Completed
# ============================================================================

def on_lesson_completed(
    event: LessonCompletedEvent,
    profile: LearnerProfile,
    achievements: Iterable[Achievement],
    context: Optional[AchievementContext] = None,
    tz: TimezoneLike = None,
) -> CompletionOutcome:
    """
    Apply a lesson completion to the learner aggregate.

    Args:
        event: Completion emitted by transition_phase()
        profile: Learner aggregate before the completion
        achievements: Achievements already unlocked
        context: Lesson catalog and completed lesson ids *before* this completion
        tz: Learner's timezone for the streak day boundary

    Returns:
        CompletionOutcome with the updated profile and everything it produced
    """
    if event.learner_id != profile.learner_id:
        raise ValueError(f"Event for {event.learner_id} applied to profile {profile.learner_id}")

    log_context = {
        'event': 'on_lesson_completed',
        'learner_id': event.learner_id,
        'lesson_id': event.lesson_id,
        'attempt_number': event.attempt_number,
        'first_completion': event.is_first_completion,
    }
    logger.info("Lesson completed event received", extra=log_context)

    context = context or AchievementContext()
    achievements = list(achievements)

    # Streak first: XP uses the streak length including today
    profile, milestone_events = streak_service.record_completion(profile, event.completed_at, tz)
    log_context['current_streak'] = profile.current_streak

    lesson = next((item for item in context.lessons if item.lesson_id == event.lesson_id), None)
    if lesson is None:
        logger.warning("Lesson missing from catalog, using default base XP", extra=log_context)
        base_xp, finishes_category = xp_calculator.DEFAULT_LESSON_BASE_XP, False
    else:
        base_xp = lesson.base_xp
        category_ids = [item.lesson_id for item in context.lessons_in_category(lesson.category)]
        finishes_category = xp_calculator.completes_category(
            event.lesson_id, category_ids, context.completed_lesson_ids
        )

    xp = xp_calculator.compute_xp(
        base_xp, event.is_first_attempt, profile.current_streak, finishes_category
    )
    log_context['xp_awarded'] = xp

    profile = profile.model_copy(update={
        "total_xp": profile.total_xp + xp,
        "total_lessons_completed": profile.total_lessons_completed + (1 if event.is_first_completion else 0),
    })
    logger.info(
        f"Awarded {xp} XP (total {profile.total_xp}, lessons {profile.total_lessons_completed})",
        extra=log_context,
    )

    context = context.model_copy(update={
        "completed_lesson_ids": set(context.completed_lesson_ids) | {event.lesson_id},
    })
    profile, new_achievements, achievement_events = achievement_service.unlock_achievements(
        profile, achievements, event.completed_at, context
    )

    log_context['new_achievements'] = [a.kind.value for a in new_achievements]
    if new_achievements:
        logger.info(f"🏆 {len(new_achievements)} new achievements unlocked!", extra=log_context)
    else:
        logger.debug("No new achievements unlocked", extra=log_context)

    return CompletionOutcome(
        profile=profile,
        xp_awarded=xp,
        completes_category=finishes_category,
        milestone_events=milestone_events,
        new_achievements=new_achievements,
        achievement_events=achievement_events,
    )


# ============================================================================
# Listener: Aggregate state changed
# ============================================================================

def on_state_changed(
    profile: LearnerProfile,
    achievements: Iterable[Achievement],
    now,
    context: Optional[AchievementContext] = None,
    reason: str = "state_changed",
) -> AchievementOutcome:
    """
    Re-evaluate achievements after a mutation that is not a lesson completion
    (family activity recorded, remote merge applied, week rolled over).
    """
    log_context = {
        'event': 'on_state_changed',
        'learner_id': profile.learner_id,
        'reason': reason,
    }
    logger.info("Evaluating achievement conditions", extra=log_context)

    profile, new_achievements, events = achievement_service.unlock_achievements(
        profile, achievements, now, context
    )

    log_context['new_achievements'] = [a.kind.value for a in new_achievements]
    if new_achievements:
        logger.info(f"🏆 {len(new_achievements)} new achievements unlocked!", extra=log_context)
    else:
        logger.debug("No new achievements unlocked", extra=log_context)

    return AchievementOutcome(profile, new_achievements, events)
