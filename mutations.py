"""
Mutation Pipeline: the only path through which durable session state changes.

Every mutation runs in the same order:
  1. apply to the in-memory session (the UI moves on immediately)
  2. when signed in (not guest), best-effort write to the Remote Store;
     a failure becomes a warning, never a rollback
  3. always write the whole session to the Local Mirror

Plan activation is the exception to "never block": old plans are deactivated
remotely first, and if that fails nothing changes (two active plans would be worse).
"""
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, ClassVar, Optional, Tuple, Union

from error_messages import friendly_error_message
from local_mirror import GUEST_FLAG_KEY, SESSION_KEY, LocalMirror
from plan_generator import PlanGenerator
from remote_store import Identity, RemoteStore, RemoteStoreError
from schemas import AnalysisResult, AppStep, DailyPlan, MeasurementEntry, Plan, UserProfile, WorkoutEntry, utcnow
from session_state import SessionState

logger = logging.getLogger(__name__)

STALE_SESSION = "session changed"

RemoteWrite = Callable[[Identity], Awaitable[None]]


@dataclass(frozen=True)
class Applied:
    kind: ClassVar[str] = "applied"


@dataclass(frozen=True)
class AppliedWithSyncWarning:
    warning: str
    kind: ClassVar[str] = "applied_with_sync_warning"


@dataclass(frozen=True)
class Rejected:
    reason: str
    kind: ClassVar[str] = "rejected"


MutationOutcome = Union[Applied, AppliedWithSyncWarning, Rejected]


class MutationPipeline:
    def __init__(
        self,
        session: SessionState,
        mirror: LocalMirror,
        remote: Optional[RemoteStore] = None,
        generator: Optional[PlanGenerator] = None,
    ):
        self.session = session
        self.mirror = mirror
        self.remote = remote
        self.generator = generator

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------
    def _remote_identity(self) -> Optional[Identity]:
        if self.remote is None or not self.session.syncs_remotely:
            return None
        return self.session.identity

    def persist(self) -> bool:
        return self.mirror.save(SESSION_KEY, self.session.snapshot())

    async def _sync(self, label: str, *writes: RemoteWrite) -> MutationOutcome:
        identity = self._remote_identity()
        if identity is None:
            return Applied()
        try:
            for write in writes:
                await write(identity)
        except RemoteStoreError as exc:
            logger.warning("Remote %s failed, kept locally: %s", label, exc)
            return AppliedWithSyncWarning(friendly_error_message(exc))
        return Applied()

    def _is_stale(self, generation: int) -> bool:
        if self.session.generation != generation:
            logger.info("Dropping result for a session that has moved on")
            return True
        return False

    def _require_generator(self) -> PlanGenerator:
        if self.generator is None:
            raise RuntimeError("MutationPipeline has no PlanGenerator")
        return self.generator

    # ------------------------------------------------------------------
    # mutations
    # ------------------------------------------------------------------
    async def complete_onboarding(self, profile: UserProfile) -> MutationOutcome:
        self.session.set_profile(profile)
        entry = MeasurementEntry(date=utcnow(), weight=profile.weight)
        self.session.add_measurement(entry)
        self.session.step = AppStep.PAYMENT

        profile_data = self.session.profile.model_dump(mode="json")
        entry_data = entry.model_dump(mode="json")
        outcome = await self._sync(
            "onboarding",
            lambda identity: self.remote.put_profile(identity, profile_data),
            lambda identity: self.remote.append_history(identity, "measurement", entry_data),
        )
        self.persist()
        return outcome

    async def confirm_payment(self) -> MutationOutcome:
        if self.session.profile is None:
            return Rejected("Complete o cadastro antes do pagamento.")

        if not self.session.profile.has_paid:
            self.session.profile = self.session.profile.model_copy(
                update={"has_paid": True, "payment_date": utcnow().isoformat()}
            )
        self.session.step = AppStep.UPLOAD

        profile_data = self.session.profile.model_dump(mode="json")
        outcome = await self._sync("payment", lambda identity: self.remote.put_profile(identity, profile_data))
        self.persist()
        return outcome

    def record_analysis(self, analysis: AnalysisResult) -> MutationOutcome:
        self.session.analysis = analysis
        self.session.step = AppStep.RESULTS
        self.persist()
        return Applied()

    async def activate_plan(self, plan: Plan, advance: bool = True) -> MutationOutcome:
        identity = self._remote_identity()
        if identity is not None:
            generation = self.session.generation
            try:
                await self.remote.deactivate_all_plans(identity)
            except RemoteStoreError as exc:
                logger.error("Plan activation aborted, could not deactivate previous plans: %s", exc)
                return Rejected(friendly_error_message(exc))
            if self._is_stale(generation):
                return Rejected(STALE_SESSION)

        self.session.plan = plan
        if advance:
            self.session.step = AppStep.PLAN

        plan_data = plan.model_dump(mode="json")
        # A failed insert leaves the remote without an active plan; the next
        # sign-in re-activates this one from the mirror
        outcome = await self._sync(
            "plan insert", lambda identity: self.remote.insert_plan(identity, plan_data, active=True)
        )
        self.persist()
        return outcome

    async def update_plan(self, plan: Plan) -> MutationOutcome:
        return await self.activate_plan(plan, advance=False)

    async def log_measurement(self, weight: float) -> MutationOutcome:
        entry = MeasurementEntry(date=utcnow(), weight=weight)
        self.session.add_measurement(entry)
        entry_data = entry.model_dump(mode="json")
        outcome = await self._sync(
            "measurement", lambda identity: self.remote.append_history(identity, "measurement", entry_data)
        )
        self.persist()
        return outcome

    async def log_workout(self, day_number: int, duration_minutes: float, calories_burned: float) -> MutationOutcome:
        entry = WorkoutEntry(
            date=utcnow(),
            day_number=day_number,
            duration_minutes=duration_minutes,
            calories_burned=calories_burned,
        )
        self.session.add_workout(entry)
        entry_data = entry.model_dump(mode="json")
        outcome = await self._sync(
            "workout", lambda identity: self.remote.append_history(identity, "workout", entry_data)
        )
        self.persist()
        return outcome

    async def logout(self) -> MutationOutcome:
        if self._remote_identity() is not None:
            try:
                await self.remote.sign_out()
            except RemoteStoreError as exc:
                logger.warning("Remote sign-out failed: %s", exc)
        self.session.reset()
        self.mirror.clear(SESSION_KEY)
        self.mirror.clear(GUEST_FLAG_KEY)
        return Applied()

    # ------------------------------------------------------------------
    # producers: await the AI, then mutate if the session is still the same
    # ------------------------------------------------------------------
    async def analyze_photo(self, image_bytes: bytes, mime_type: str) -> MutationOutcome:
        generation = self.session.generation
        analysis = await self._require_generator().analyze_image(image_bytes, mime_type)
        if self._is_stale(generation):
            return Rejected(STALE_SESSION)
        return self.record_analysis(analysis)

    async def generate_plan(self) -> MutationOutcome:
        analysis, profile = self.session.analysis, self.session.profile
        if analysis is None or profile is None:
            return Rejected("Envie uma foto para análise antes de gerar o plano.")

        generation = self.session.generation
        plan = await self._require_generator().generate_plan(analysis, profile)
        if self._is_stale(generation):
            return Rejected(STALE_SESSION)
        return await self.activate_plan(plan)

    def _locate_day(self, day: int) -> Tuple[Optional[DailyPlan], Optional[str]]:
        if self.session.plan is None or self.session.profile is None:
            return None, "Nenhum plano ativo."
        daily = self.session.plan.day(day)
        if daily is None:
            return None, f"Dia {day} não existe no plano."
        return daily, None

    async def _apply_to_day(self, generation: int, plan_id: str, day: int, change) -> MutationOutcome:
        """Apply ``change(daily_plan)`` to a copy of the current plan, if it is still the one we started from."""
        if self._is_stale(generation) or self.session.plan is None or self.session.plan.id != plan_id:
            return Rejected(STALE_SESSION)
        updated = self.session.plan.model_copy(deep=True)
        change(updated.day(day))
        return await self.update_plan(updated)

    async def regenerate_meal(self, day: int, meal_index: int) -> MutationOutcome:
        daily, error = self._locate_day(day)
        if error:
            return Rejected(error)
        if not 0 <= meal_index < len(daily.meals):
            return Rejected(f"Refeição {meal_index} não existe no dia {day}.")

        generation, plan_id = self.session.generation, self.session.plan.id
        meal = await self._require_generator().regenerate_meal(daily.meals[meal_index], self.session.profile)

        def change(target: DailyPlan):
            target.meals[meal_index] = meal

        return await self._apply_to_day(generation, plan_id, day, change)

    async def swap_exercise(self, day: int, exercise_index: int) -> MutationOutcome:
        daily, error = self._locate_day(day)
        if error:
            return Rejected(error)
        if not 0 <= exercise_index < len(daily.exercises):
            return Rejected(f"Exercício {exercise_index} não existe no dia {day}.")

        generation, plan_id = self.session.generation, self.session.plan.id
        exercise = await self._require_generator().swap_exercise(
            daily.exercises[exercise_index], self.session.profile, daily.workout_focus
        )

        def change(target: DailyPlan):
            target.exercises[exercise_index] = exercise

        return await self._apply_to_day(generation, plan_id, day, change)

    async def regenerate_workout(self, day: int) -> MutationOutcome:
        daily, error = self._locate_day(day)
        if error:
            return Rejected(error)

        generation, plan_id = self.session.generation, self.session.plan.id
        workout = await self._require_generator().regenerate_workout(day, daily.workout_focus, self.session.profile)

        def change(target: DailyPlan):
            target.exercises = workout.exercises
            target.total_calories = workout.total_calories
            target.workout_focus = workout.workout_focus or target.workout_focus

        return await self._apply_to_day(generation, plan_id, day, change)
