"""
Achievement Service - Rule-based unlock detection

Each AchievementKind maps to a predicate over the learner's aggregate state
(profile + AchievementContext). After any state-mutating operation the evaluator
re-checks only the kinds not yet unlocked; a kind that becomes true produces exactly
one Achievement record. Nothing is ever revoked.

Evaluation order is the rule table order, so results are deterministic.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Set, Tuple

from progress_engine.config import get_settings
from progress_engine.schemas import (
    Achievement,
    AchievementContext,
    AchievementKind,
    AchievementUnlockedEvent,
    LearnerProfile,
    LessonCategory,
    as_utc,
)

logger = logging.getLogger(__name__)

SUPER_LEARNER_XP = 500
FAMILY_TIME_ACTIVITIES = 1

Predicate = Callable[[LearnerProfile, AchievementContext], bool]


class AchievementRule(NamedTuple):
    """
    Unlock condition for one kind.

    metric/required describe progress toward the goal for locked-achievement UI;
    required is None for curriculum rules whose target depends on the catalog.
    """
    predicate: Predicate
    metric: str
    required: Optional[int]


def _streak_at_least(days: int) -> Predicate:
    return lambda profile, context: profile.current_streak >= days


def _category_complete(category: LessonCategory) -> Predicate:
    return lambda profile, context: context.category_complete(category)


def _category_started(category: LessonCategory) -> Predicate:
    return lambda profile, context: context.completed_in_category(category) >= 1


ACHIEVEMENT_RULES: Dict[AchievementKind, AchievementRule] = {
    AchievementKind.FIRST_LESSON: AchievementRule(
        lambda profile, context: profile.total_lessons_completed >= 1, "lessons_completed", 1,
    ),
    AchievementKind.STREAK_3: AchievementRule(_streak_at_least(3), "streak_days", 3),
    AchievementKind.STREAK_7: AchievementRule(_streak_at_least(7), "streak_days", 7),
    AchievementKind.STREAK_30: AchievementRule(_streak_at_least(30), "streak_days", 30),
    AchievementKind.WUDU_MASTER: AchievementRule(
        _category_complete(LessonCategory.WUDU), "category_lessons_completed", None,
    ),
    AchievementKind.SALAH_STARTER: AchievementRule(
        _category_started(LessonCategory.SALAH), "category_lessons_completed", 1,
    ),
    AchievementKind.QURAN_EXPLORER: AchievementRule(
        _category_started(LessonCategory.QURAN), "category_lessons_completed", 1,
    ),
    AchievementKind.FAMILY_TIME: AchievementRule(
        lambda profile, context: context.completed_family_activities >= FAMILY_TIME_ACTIVITIES,
        "family_activities_completed", FAMILY_TIME_ACTIVITIES,
    ),
    AchievementKind.SUPER_LEARNER: AchievementRule(
        lambda profile, context: profile.total_xp >= SUPER_LEARNER_XP, "xp", SUPER_LEARNER_XP,
    ),
    AchievementKind.WEEKLY_CHAMPION: AchievementRule(
        lambda profile, context: context.week_complete(context.current_week_number),
        "week_lessons_completed", None,
    ),
}

# Category each curriculum rule watches, for progress reporting
_RULE_CATEGORY = {
    AchievementKind.WUDU_MASTER: LessonCategory.WUDU,
    AchievementKind.SALAH_STARTER: LessonCategory.SALAH,
    AchievementKind.QURAN_EXPLORER: LessonCategory.QURAN,
}


class AchievementProgress(NamedTuple):
    kind: AchievementKind
    current: int
    required: int

    @property
    def fraction(self) -> float:
        return min(1.0, self.current / self.required) if self.required else 0.0


def evaluate_achievements(
    profile: LearnerProfile,
    unlocked_kinds: Iterable[AchievementKind],
    context: Optional[AchievementContext] = None,
) -> List[AchievementKind]:
    """
    Kinds whose predicate is newly true (MAIN EVALUATION FUNCTION)

    Already-unlocked kinds are skipped without evaluating their predicate. Rules that
    need curriculum facts are false when no context is supplied.

    Returns:
        Newly unlocked kinds in rule-table order
    """
    context = context or AchievementContext()
    unlocked = set(unlocked_kinds)
    newly_unlocked = []

    for kind, rule in ACHIEVEMENT_RULES.items():
        if kind in unlocked:
            continue
        result = rule.predicate(profile, context)
        logger.debug(f"Rule eval for {profile.learner_id}: {kind.value} -> {result}")
        if result:
            newly_unlocked.append(kind)

    return newly_unlocked


def unlock_achievements(
    profile: LearnerProfile,
    achievements: Iterable[Achievement],
    now: datetime,
    context: Optional[AchievementContext] = None,
) -> Tuple[LearnerProfile, List[Achievement], List[AchievementUnlockedEvent]]:
    """
    Evaluate, create records for newly true kinds and credit their XP reward

    XP rewards can satisfy XP rules, so evaluation repeats until a pass unlocks
    nothing (bounded by the number of kinds).

    Returns:
        Tuple of (updated_profile, new_achievement_records, events)
    """
    now = as_utc(now)
    rewards_enabled = get_settings().ACHIEVEMENT_XP_REWARDS_ENABLED
    unlocked: Set[AchievementKind] = {a.kind for a in achievements}
    created: List[Achievement] = []
    events: List[AchievementUnlockedEvent] = []

    while True:
        newly = evaluate_achievements(profile, unlocked, context)
        if not newly:
            break
        for kind in newly:
            unlocked.add(kind)
            reward = kind.xp_reward if rewards_enabled else 0
            created.append(Achievement(learner_id=profile.learner_id, kind=kind, unlocked_at=now))
            events.append(AchievementUnlockedEvent(
                learner_id=profile.learner_id, kind=kind, unlocked_at=now, xp_reward=reward,
            ))
            if reward:
                profile = profile.model_copy(update={"total_xp": profile.total_xp + reward})
            logger.info(f"🏆 Achievement unlocked for {profile.learner_id}: {kind.value} (+{reward} XP)")

    if not created:
        logger.debug(f"No new achievements for {profile.learner_id}")
    return profile, created, events


def mark_achievement_seen(achievement: Achievement) -> Achievement:
    """The seen flag is the only mutable part of an achievement"""
    if achievement.seen:
        return achievement
    return achievement.model_copy(update={"seen": True})


def achievement_progress(
    kind: AchievementKind,
    profile: LearnerProfile,
    context: Optional[AchievementContext] = None,
) -> Optional[AchievementProgress]:
    """
    Progress toward a locked kind

    Returns None for binary goals that have no meaningful intermediate value
    (weekly champion) or when the catalog has no lessons for the watched category.
    """
    context = context or AchievementContext()
    rule = ACHIEVEMENT_RULES[kind]

    if rule.metric == "lessons_completed":
        current = profile.total_lessons_completed
    elif rule.metric == "streak_days":
        current = profile.current_streak
    elif rule.metric == "xp":
        current = profile.total_xp
    elif rule.metric == "family_activities_completed":
        current = context.completed_family_activities
    elif rule.metric == "category_lessons_completed":
        category = _RULE_CATEGORY[kind]
        total = len(context.lessons_in_category(category))
        if total == 0:
            return None
        required = rule.required if rule.required is not None else total
        return AchievementProgress(kind, context.completed_in_category(category), required)
    else:
        return None

    return AchievementProgress(kind, current, rule.required)


def all_progress(
    profile: LearnerProfile,
    unlocked_kinds: Iterable[AchievementKind],
    context: Optional[AchievementContext] = None,
) -> Dict[AchievementKind, AchievementProgress]:
    """Progress for every locked kind that has one"""
    unlocked = set(unlocked_kinds)
    result = {}
    for kind in ACHIEVEMENT_RULES:
        if kind in unlocked:
            continue
        progress = achievement_progress(kind, profile, context)
        if progress is not None:
            result[kind] = progress
    return result
