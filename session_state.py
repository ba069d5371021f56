"""In-memory session: the single snapshot the UI renders from."""
import bisect
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from remote_store import Identity
from schema_normalizer import DEFAULT_PROFILE, apply_payment_latch, normalize
from schemas import AnalysisResult, AppStep, MeasurementEntry, Plan, UserProfile, WorkoutEntry

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def parse_or_none(model: Type[M], data: Any) -> Optional[M]:
    """Validate ``data`` into ``model``; anything malformed is treated as absent."""
    if data is None:
        return None
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        logger.warning("Discarding malformed %s: %s", model.__name__, exc.error_count())
        return None


def parse_profile(raw: Any) -> Optional[UserProfile]:
    if not raw or not isinstance(raw, Mapping):
        return None
    return parse_or_none(UserProfile, normalize(raw, DEFAULT_PROFILE))


def _parse_entries(model: Type[M], raw: Optional[Iterable[Any]]) -> List[M]:
    entries = []
    for item in raw or []:
        entry = parse_or_none(model, item)
        if entry is not None:
            entries.append(entry)
    # Entries can sync out of order after a reconnect
    entries.sort(key=lambda e: e.date)
    return entries


def landing_step(profile: Optional[UserProfile], plan: Optional[Plan]) -> AppStep:
    """Furthest step of the flow for which the required data exists."""
    if plan is not None:
        return AppStep.PLAN
    if profile is None:
        return AppStep.ONBOARDING
    if profile.has_paid:
        return AppStep.UPLOAD
    return AppStep.PAYMENT


@dataclass
class SessionState:
    step: AppStep = AppStep.HOME
    profile: Optional[UserProfile] = None
    plan: Optional[Plan] = None
    analysis: Optional[AnalysisResult] = None
    measurements: List[MeasurementEntry] = field(default_factory=list)
    workouts: List[WorkoutEntry] = field(default_factory=list)
    identity: Optional[Identity] = None
    guest: bool = False
    # Bumped whenever the session is replaced; in-flight producers compare against it
    generation: int = 0

    @property
    def syncs_remotely(self) -> bool:
        return self.identity is not None and not self.guest

    def snapshot(self) -> Dict[str, Any]:
        """The persisted layout: step, profile, plan and both histories."""
        return {
            "step": self.step.value,
            "profile": self.profile.model_dump(mode="json") if self.profile else None,
            "plan": self.plan.model_dump(mode="json") if self.plan else None,
            "measurements": [m.model_dump(mode="json") for m in self.measurements],
            "workouts": [w.model_dump(mode="json") for w in self.workouts],
        }

    def restore(self, snapshot: Optional[Mapping[str, Any]]) -> None:
        """Rebuild profile, plan and history from a mirror snapshot, field by field."""
        snapshot = snapshot if isinstance(snapshot, Mapping) else {}
        self.profile = parse_profile(snapshot.get("profile"))
        self.plan = parse_or_none(Plan, snapshot.get("plan"))
        self.replace_history(snapshot.get("measurements"), snapshot.get("workouts"))
        self.step = landing_step(self.profile, self.plan)

    def reset(self) -> None:
        self.step = AppStep.HOME
        self.profile = None
        self.plan = None
        self.analysis = None
        self.measurements = []
        self.workouts = []
        self.identity = None
        self.guest = False
        self.generation += 1

    def set_profile(self, profile: UserProfile) -> None:
        current = self.profile.model_dump() if self.profile else None
        self.profile = UserProfile.model_validate(apply_payment_latch(current, profile.model_dump()))

    def replace_history(self, measurements: Optional[Iterable[Any]], workouts: Optional[Iterable[Any]]) -> None:
        self.measurements = _parse_entries(MeasurementEntry, measurements)
        self.workouts = _parse_entries(WorkoutEntry, workouts)

    def add_measurement(self, entry: MeasurementEntry) -> None:
        bisect.insort(self.measurements, entry, key=lambda e: e.date)

    def add_workout(self, entry: WorkoutEntry) -> None:
        bisect.insort(self.workouts, entry, key=lambda e: e.date)
