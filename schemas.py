from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AppStep(str, Enum):
    HOME = "HOME"
    AUTH = "AUTH"
    ONBOARDING = "ONBOARDING"
    PAYMENT = "PAYMENT"
    UPLOAD = "UPLOAD"
    ANALYZING = "ANALYZING"
    RESULTS = "RESULTS"
    PLAN = "PLAN"
    PROGRESS = "PROGRESS"


class BodyType(str, Enum):
    ECTOMORPH = "Ectomorph"
    MESOMORPH = "Mesomorph"
    ENDOMORPH = "Endomorph"
    UNKNOWN = "Unknown"


ActivityLevel = Literal["sedentary", "light", "moderate", "active", "athlete"]


class Meal(BaseModel):
    name: str
    items: List[str] = []
    calories: float = Field(default=0, ge=0)
    protein: float = Field(default=0, ge=0)
    carbs: float = Field(default=0, ge=0)
    fats: float = Field(default=0, ge=0)


class Exercise(BaseModel):
    name: str
    sets: int = 0
    reps: str = ""
    notes: Optional[str] = None


class DailyPlan(BaseModel):
    day: int
    workout_focus: str = ""
    duration_min: int = 0
    exercises: List[Exercise] = []
    meals: List[Meal] = []
    total_calories: float = 0


class WeeklySummary(BaseModel):
    week: int
    summary: str


class SearchSource(BaseModel):
    title: str
    uri: str


class Plan(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    goal: str = ""
    goals: List[str] = []
    duration_days: int = 0
    summary: str = ""
    target_calories: Optional[int] = None
    weekly_summaries: List[WeeklySummary] = []
    daily_plans: List[DailyPlan] = []
    search_sources: List[SearchSource] = []

    def day(self, number: int) -> Optional[DailyPlan]:
        for daily in self.daily_plans:
            if daily.day == number:
                return daily
        return None


class WorkoutUpdate(BaseModel):
    exercises: List[Exercise]
    total_calories: float = 0
    workout_focus: str = ""


class AnalysisResult(BaseModel):
    body_type: BodyType = BodyType.UNKNOWN
    estimated_body_fat: float
    posture_notes: str = ""
    focus_areas: List[str] = []
    recommendation_summary: str


class UserProfile(BaseModel):
    # Newer clients may add fields; keep them instead of dropping them on the floor
    model_config = ConfigDict(extra="allow")

    name: str
    email: str
    birth_date: str
    gender: Literal["male", "female", "other"]
    height: float = Field(gt=0, description="cm")
    weight: float = Field(gt=0, description="kg")
    activity_level: ActivityLevel = "moderate"
    medical_conditions: str = ""
    dietary_restrictions: str = ""
    country: str = "Brasil"
    state: str = ""
    language: str = "pt"
    has_paid: bool = False
    payment_date: str = ""


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MeasurementEntry(BaseModel):
    date: datetime = Field(default_factory=utcnow)
    weight: float = Field(gt=0)

    @field_validator("date")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        return _aware(value)


class WorkoutEntry(BaseModel):
    date: datetime = Field(default_factory=utcnow)
    day_number: int = Field(ge=1)
    calories_burned: float = Field(ge=0)
    duration_minutes: float = Field(ge=0)

    @field_validator("date")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        return _aware(value)
