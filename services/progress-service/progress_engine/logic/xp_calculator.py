"""
XP Calculator

Pure function of its inputs, no settings or storage access, so a completion can be
re-scored anywhere with the same result.

Formula:
    xp = base
         x 1.5 on the learner's first attempt at the lesson
         x (1 + min(streak, 10) * 0.1)
         x 1.25 when this completion finishes the lesson's category
    rounded half-up to an integer, never negative
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable

DEFAULT_LESSON_BASE_XP = 20
FIRST_ATTEMPT_MULTIPLIER = Decimal("1.5")
STREAK_BONUS_PER_DAY = Decimal("0.1")
STREAK_BONUS_CAP_DAYS = 10  # +100% at most
CATEGORY_COMPLETION_MULTIPLIER = Decimal("1.25")


def streak_multiplier(streak_length: int) -> Decimal:
    """1 + min(streak, 10) * 0.1; a negative streak counts as 0"""
    days = min(max(streak_length, 0), STREAK_BONUS_CAP_DAYS)
    return Decimal(1) + days * STREAK_BONUS_PER_DAY


def xp_breakdown(
    lesson_base_xp: int,
    is_first_attempt: bool,
    streak_length: int,
    completes_category: bool,
) -> Dict[str, Decimal]:
    """
    Every multiplier applied to a completion, for display and debugging

    Returns:
        {"base", "firstAttempt", "streak", "categoryCompletion", "total"}
        where total is the unrounded product
    """
    parts = {
        "base": Decimal(max(lesson_base_xp, 0)),
        "firstAttempt": FIRST_ATTEMPT_MULTIPLIER if is_first_attempt else Decimal(1),
        "streak": streak_multiplier(streak_length),
        "categoryCompletion": CATEGORY_COMPLETION_MULTIPLIER if completes_category else Decimal(1),
    }
    parts["total"] = (
        parts["base"] * parts["firstAttempt"] * parts["streak"] * parts["categoryCompletion"]
    )
    return parts


def compute_xp(
    lesson_base_xp: int,
    is_first_attempt: bool,
    streak_length: int,
    completes_category: bool,
) -> int:
    """
    XP awarded for one lesson completion

    Examples:
        >>> compute_xp(100, True, 5, False)
        225
        >>> compute_xp(20, False, 0, False)
        20
    """
    total = xp_breakdown(lesson_base_xp, is_first_attempt, streak_length, completes_category)["total"]
    return max(0, int(total.quantize(Decimal(1), rounding=ROUND_HALF_UP)))


def completes_category(
    lesson_id: str,
    category_lesson_ids: Iterable[str],
    completed_lesson_ids: Iterable[str],
) -> bool:
    """
    True when completing lesson_id leaves every lesson of its category completed
    and the category was not already complete before
    """
    category = set(category_lesson_ids)
    if lesson_id not in category:
        return False
    already_completed = set(completed_lesson_ids)
    if category <= already_completed:
        return False
    return category <= already_completed | {lesson_id}
