"""
Progress Engine Schemas (Pydantic)

Records exchanged with the storage/sync collaborator plus the events emitted by the
engine. Field names serialize as camelCase so local rows and remote documents share
one shape and can be merged structurally.

Raw-string enums decode through decode_enum(): unknown values raise InvalidRecordState
unless LENIENT_ENUM_DECODE is set, in which case the first case is used and a warning
is logged.
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel

from progress_engine.config import get_settings
from progress_engine.errors import InvalidRecordState

logger = logging.getLogger(__name__)

_TIMESTAMP = TypeAdapter(datetime)


def decode_enum(enum_cls, raw: Any, field_name: str):
    """Decode a raw storage string into enum_cls following the configured policy"""
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(raw)
    except ValueError:
        if get_settings().LENIENT_ENUM_DECODE:
            fallback = next(iter(enum_cls))
            logger.warning(f"Unknown {field_name} value {raw!r}, falling back to {fallback.value!r}")
            return fallback
        raise InvalidRecordState(f"Unknown {field_name} value: {raw!r}")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive timestamps are interpreted as UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================================================
# Enumerations
# ============================================================================

class Phase(str, Enum):
    """The four ordered phases of a lesson: Hook -> Teach -> Practice -> Reward"""
    HOOK = "hook"
    TEACH = "teach"
    PRACTICE = "practice"
    REWARD = "reward"

    @property
    def order(self) -> int:
        return list(Phase).index(self)

    @property
    def successor(self) -> Optional["Phase"]:
        phases = list(Phase)
        index = self.order + 1
        return phases[index] if index < len(phases) else None

    @property
    def predecessor(self) -> Optional["Phase"]:
        return list(Phase)[self.order - 1] if self.order > 0 else None

    @classmethod
    def first(cls) -> "Phase":
        return cls.HOOK

    @classmethod
    def decode(cls, raw: Any) -> "Phase":
        return decode_enum(cls, raw, "phase")


def later_phase(a: Optional[Phase], b: Optional[Phase]) -> Optional[Phase]:
    """Later of two phases in the fixed ordering; None sorts before every phase"""
    if a is None:
        return b
    if b is None:
        return a
    return a if a.order >= b.order else b


class LessonState(str, Enum):
    """Position of one lesson attempt; derived from the persisted record"""
    NOT_STARTED = "not_started"
    HOOK = "hook"
    TEACH = "teach"
    PRACTICE = "practice"
    REWARD = "reward"
    COMPLETED = "completed"


class LessonCategory(str, Enum):
    AQEEDAH = "Aqeedah"
    SALAH = "Salah"
    WUDU = "Wudu"
    QURAN = "Quran"
    SEERAH = "Seerah"
    ADAB = "Adab"
    DUAA = "Du'a"
    STORIES = "Stories"

    @classmethod
    def decode(cls, raw: Any) -> "LessonCategory":
        return decode_enum(cls, raw, "lesson category")


class AchievementKind(str, Enum):
    FIRST_LESSON = "first_lesson"
    STREAK_3 = "streak_3"
    STREAK_7 = "streak_7"
    STREAK_30 = "streak_30"
    WUDU_MASTER = "wudu_master"
    SALAH_STARTER = "salah_starter"
    QURAN_EXPLORER = "quran_explorer"
    FAMILY_TIME = "family_time"
    SUPER_LEARNER = "super_learner"
    WEEKLY_CHAMPION = "weekly_champion"

    @classmethod
    def decode(cls, raw: Any) -> "AchievementKind":
        return decode_enum(cls, raw, "achievement kind")

    @property
    def label(self) -> str:
        return ACHIEVEMENT_DETAILS[self]["label"]

    @property
    def description(self) -> str:
        return ACHIEVEMENT_DETAILS[self]["description"]

    @property
    def xp_reward(self) -> int:
        return ACHIEVEMENT_DETAILS[self]["xp_reward"]


ACHIEVEMENT_DETAILS: Dict[AchievementKind, Dict[str, Any]] = {
    AchievementKind.FIRST_LESSON: {
        "label": "First Steps", "description": "Completed your first lesson!", "xp_reward": 20,
    },
    AchievementKind.STREAK_3: {
        "label": "3 Day Streak", "description": "Learned for 3 days in a row", "xp_reward": 30,
    },
    AchievementKind.STREAK_7: {
        "label": "Week Warrior", "description": "Learned for 7 days in a row", "xp_reward": 100,
    },
    AchievementKind.STREAK_30: {
        "label": "Monthly Master", "description": "Learned for 30 days in a row", "xp_reward": 500,
    },
    AchievementKind.WUDU_MASTER: {
        "label": "Wudu Master", "description": "Completed all Wudu lessons", "xp_reward": 200,
    },
    AchievementKind.SALAH_STARTER: {
        "label": "Salah Starter", "description": "Started learning about Salah", "xp_reward": 50,
    },
    AchievementKind.QURAN_EXPLORER: {
        "label": "Quran Explorer", "description": "Explored Quran stories", "xp_reward": 75,
    },
    AchievementKind.FAMILY_TIME: {
        "label": "Family Time", "description": "Completed a family activity", "xp_reward": 25,
    },
    AchievementKind.SUPER_LEARNER: {
        "label": "Super Learner", "description": "Earned 500 XP", "xp_reward": 150,
    },
    AchievementKind.WEEKLY_CHAMPION: {
        "label": "Weekly Champion", "description": "Completed all lessons this week", "xp_reward": 100,
    },
}


# ============================================================================
# Records
# ============================================================================

class EngineRecord(BaseModel):
    """Base for every record: camelCase aliases, snake_case attributes"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PhaseTimestamps(EngineRecord):
    """
    Fixed four-slot table of phase completion timestamps, indexed by Phase.

    Stored as {"hook": ts, "teach": ts, ...}; empty slots are null.
    """
    hook: Optional[datetime] = None
    teach: Optional[datetime] = None
    practice: Optional[datetime] = None
    reward: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def decode_phase_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        decoded: Dict[str, Any] = {}
        for key, value in data.items():
            slot = Phase.decode(key).value
            if value is None:
                decoded.setdefault(slot, None)
                continue
            value = as_utc(_TIMESTAMP.validate_python(value))
            existing = decoded.get(slot)
            # Lenient decoding can fold two keys onto one slot; the earlier one wins
            if existing is None or value < existing:
                decoded[slot] = value
        return decoded

    @field_validator("hook", "teach", "practice", "reward")
    @classmethod
    def normalize_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    def get(self, phase: Phase) -> Optional[datetime]:
        return getattr(self, phase.value)

    def with_phase(self, phase: Phase, completed_at: datetime) -> "PhaseTimestamps":
        return self.model_copy(update={phase.value: as_utc(completed_at)})

    def completed_phases(self) -> List[Phase]:
        return [phase for phase in Phase if self.get(phase) is not None]

    def latest_phase(self) -> Optional[Phase]:
        completed = self.completed_phases()
        return completed[-1] if completed else None

    def latest(self) -> Optional[datetime]:
        stamps = [self.get(phase) for phase in self.completed_phases()]
        return max(stamps) if stamps else None

    def is_empty(self) -> bool:
        return not self.completed_phases()

    def merge(self, other: "PhaseTimestamps") -> "PhaseTimestamps":
        """Union of both tables; a slot set on both sides keeps the earlier timestamp"""
        merged = {}
        for phase in Phase:
            mine, theirs = self.get(phase), other.get(phase)
            if mine is None or theirs is None:
                merged[phase.value] = mine or theirs
            else:
                merged[phase.value] = min(mine, theirs)
        return PhaseTimestamps(**merged)


class LearnerProfile(EngineRecord):
    """Per-child aggregate: XP, streaks, lesson totals, freeze credits"""
    learner_id: str = Field(..., min_length=1)
    total_xp: int = Field(default=0, ge=0)
    current_streak: int = Field(default=0, ge=0)
    longest_streak: int = Field(default=0, ge=0)
    total_lessons_completed: int = Field(default=0, ge=0)
    last_lesson_completed_at: Optional[datetime] = None
    streak_freeze_balance: int = Field(default=0, ge=0)
    last_freeze_granted_at: Optional[datetime] = None

    @field_validator("last_lesson_completed_at", "last_freeze_granted_at")
    @classmethod
    def normalize_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class LessonAttemptProgress(EngineRecord):
    """Progress of one learner through one lesson, persisted after every phase"""
    lesson_id: str = Field(..., min_length=1)
    learner_id: str = Field(..., min_length=1)
    is_completed: bool = False
    completed_at: Optional[datetime] = None
    score: int = Field(default=0, ge=0, le=100)
    xp_earned: int = Field(default=0, ge=0)
    attempts: int = Field(default=0, ge=0)
    last_completed_phase: Optional[Phase] = None
    phase_timestamps: PhaseTimestamps = Field(default_factory=PhaseTimestamps)
    last_accessed_at: Optional[datetime] = None

    @field_validator("last_completed_phase", mode="before")
    @classmethod
    def decode_phase(cls, v: Any) -> Optional[Phase]:
        if v is None:
            return None
        return Phase.decode(v)

    @field_validator("completed_at", "last_accessed_at")
    @classmethod
    def normalize_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @property
    def key(self) -> str:
        return f"{self.learner_id}:{self.lesson_id}"


class Achievement(EngineRecord):
    """Unlocked achievement; immutable except for the seen flag"""
    model_config = ConfigDict(frozen=True)

    learner_id: str = Field(..., min_length=1)
    kind: AchievementKind
    unlocked_at: datetime
    seen: bool = False

    @field_validator("kind", mode="before")
    @classmethod
    def decode_kind(cls, v: Any) -> AchievementKind:
        return AchievementKind.decode(v)

    @field_validator("unlocked_at")
    @classmethod
    def normalize_timezone(cls, v: datetime) -> datetime:
        return as_utc(v)


# ============================================================================
# Evaluation context
# ============================================================================

class LessonSummary(EngineRecord):
    """Curriculum facts the evaluator needs about one lesson"""
    lesson_id: str
    category: LessonCategory
    week_number: int = Field(default=1, ge=1)
    base_xp: int = Field(default=20, ge=0)

    @field_validator("category", mode="before")
    @classmethod
    def decode_category(cls, v: Any) -> LessonCategory:
        return LessonCategory.decode(v)


class AchievementContext(EngineRecord):
    """Aggregate learner facts beyond the profile, supplied by the caller"""
    lessons: List[LessonSummary] = Field(default_factory=list)
    completed_lesson_ids: Set[str] = Field(default_factory=set)
    completed_family_activities: int = Field(default=0, ge=0)
    current_week_number: Optional[int] = None

    def lessons_in_category(self, category: LessonCategory) -> List[LessonSummary]:
        return [lesson for lesson in self.lessons if lesson.category == category]

    def completed_in_category(self, category: LessonCategory) -> int:
        return sum(
            1 for lesson in self.lessons_in_category(category)
            if lesson.lesson_id in self.completed_lesson_ids
        )

    def category_complete(self, category: LessonCategory) -> bool:
        lessons = self.lessons_in_category(category)
        return bool(lessons) and all(lesson.lesson_id in self.completed_lesson_ids for lesson in lessons)

    def week_complete(self, week_number: Optional[int]) -> bool:
        if week_number is None:
            return False
        lessons = [lesson for lesson in self.lessons if lesson.week_number == week_number]
        return bool(lessons) and all(lesson.lesson_id in self.completed_lesson_ids for lesson in lessons)


# ============================================================================
# Events
# ============================================================================

class LessonCompletedEvent(EngineRecord):
    """Emitted when the Reward phase of an attempt is recorded"""
    learner_id: str
    lesson_id: str
    completed_at: datetime
    attempt_number: int = Field(..., ge=1)
    is_first_completion: bool
    is_first_attempt: bool


class StreakMilestoneEvent(EngineRecord):
    """Streak crossed one of the configured milestone lengths"""
    learner_id: str
    milestone_days: int = Field(..., gt=0)
    current_streak: int = Field(..., ge=0)
    reached_at: datetime


class AchievementUnlockedEvent(EngineRecord):
    learner_id: str
    kind: AchievementKind
    unlocked_at: datetime
    xp_reward: int = Field(default=0, ge=0)
