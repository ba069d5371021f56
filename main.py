# ============================================================
# CaloryIA client runtime - main.py
# ------------------------------------------------------------
# FastAPI app that owns one device's session and:
#  - Reconciles remote / local-mirror / guest data on every app load
#  - Routes every state change through the Mutation Pipeline
#  - Calls the AI (photo analysis, plans, chat) with key rotation + retries
#  - Exposes history, CSV export and the payment redirect
# ============================================================

import asyncio
import csv
import logging
from contextlib import asynccontextmanager
from io import StringIO
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from openai import APIError
from pydantic import BaseModel, Field

from ai_caller import CapabilityError, CredentialPool, ResponseParseError, RetryableCaller, is_retryable
from db import init_db, make_engine, make_session_factory
from error_messages import RETRY_LATER, friendly_error_message
from local_mirror import GUEST_FLAG_KEY, LocalMirror
from mutations import AppliedWithSyncWarning, MutationOutcome, MutationPipeline, Rejected
from payment import create_payment_order
from plan_generator import PlanGenerator
from reconciler import ReconcileResult, Reconciler
from remote_store import AuthError, RemoteStore, RemoteStoreError, SqlRemoteStore
from schemas import Meal, Plan, UserProfile
from session_state import SessionState
from settings import Settings

settings = Settings.from_env()
logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024
MAX_VIDEO_BYTES = 50 * 1024 * 1024


# ============================================================
# 1️⃣ Runtime wiring
# ------------------------------------------------------------
# Remote store, mirror and AI are built once and handed to the
# reconciler and pipeline; nothing reaches for a global client.
# ============================================================
class AppRuntime:
    def __init__(
        self,
        settings: Settings,
        mirror: LocalMirror,
        remote: Optional[RemoteStore],
        generator: Optional[PlanGenerator],
    ):
        self.settings = settings
        self.mirror = mirror
        self.remote = remote
        self.generator = generator
        self.session = SessionState()
        self.reconciler = Reconciler(self.session, mirror, remote)
        self.pipeline = MutationPipeline(self.session, mirror, remote, generator)

    async def aclose(self) -> None:
        if self.generator is not None:
            await self.generator.caller.aclose()


def build_runtime(settings: Settings) -> AppRuntime:
    mirror = LocalMirror(settings.mirror_dir)

    remote = None
    if settings.remote_configured:
        engine = make_engine(settings.database_url)
        init_db(engine)
        remote = SqlRemoteStore(make_session_factory(engine), token_storage=mirror)

    pool = CredentialPool(settings.openai_api_keys, strategy=settings.ai_key_strategy)
    caller = RetryableCaller(
        pool,
        retries=settings.ai_max_retries,
        base_delay=settings.ai_backoff_seconds,
        timeout=settings.ai_timeout_seconds,
    )
    return AppRuntime(settings, mirror, remote, PlanGenerator(caller, model=settings.openai_model))


_runtime: Optional[AppRuntime] = None


def get_runtime() -> AppRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime(settings)
    return _runtime


# ============================================================
# 2️⃣ FastAPI App Initialization
# ============================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # AI clients hold connection pools
    if _runtime is not None:
        await _runtime.aclose()


app = FastAPI(
    title="CaloryIA API",
    description="Session reconciliation, offline mirror and AI plan generation for the CaloryIA app",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================
# 3️⃣ Request Schemas
# ============================================================
class SessionStartInput(BaseModel):
    page_url: Optional[str] = None


class CredentialsInput(BaseModel):
    email: str = Field(min_length=3)
    password: str = Field(min_length=1)


class MeasurementInput(BaseModel):
    weight: float = Field(gt=0, le=500)


class WorkoutInput(BaseModel):
    day_number: int = Field(ge=1)
    duration_minutes: float = Field(ge=0, le=600)
    calories_burned: float = Field(ge=0)


class MealRegenInput(BaseModel):
    day: int = Field(ge=1)
    meal_index: int = Field(ge=0)


class ExerciseSwapInput(BaseModel):
    day: int = Field(ge=1)
    exercise_index: int = Field(ge=0)


class WorkoutRegenInput(BaseModel):
    day: int = Field(ge=1)


class ChatTurn(BaseModel):
    role: Literal["user", "assistant", "model"]
    content: str


class ChatInput(BaseModel):
    history: List[ChatTurn] = []
    message: str = Field(min_length=1, max_length=4000)


# ============================================================
# 4️⃣ Response helpers
# ============================================================
def session_view(runtime: AppRuntime) -> dict:
    session = runtime.session
    view = session.snapshot()
    view["guest"] = session.guest
    view["email"] = session.identity.email if session.identity else None
    view["analysis"] = session.analysis.model_dump(mode="json") if session.analysis else None
    return view


def reconcile_view(runtime: AppRuntime, result: ReconcileResult) -> dict:
    return {
        "state": result.state.value,
        "checking_complete": result.checking_complete,
        "notices": result.notices,
        "clean_url": result.clean_url,
        "payment_confirmed": result.payment_confirmed,
        "step": runtime.session.step.value,
        "session": session_view(runtime),
    }


def outcome_response(runtime: AppRuntime, outcome: MutationOutcome, **extra) -> dict:
    if isinstance(outcome, Rejected):
        raise HTTPException(status_code=409, detail=outcome.reason)
    body = {"outcome": outcome.kind, "step": runtime.session.step.value}
    if isinstance(outcome, AppliedWithSyncWarning):
        body["warning"] = outcome.warning
    body.update(extra)
    return body


async def run_capability(awaitable):
    """Await an AI-backed call, turning provider failures into HTTP errors."""
    try:
        return await awaitable
    except ResponseParseError as e:
        logger.warning("AI response parse failure: %s", e)
        raise HTTPException(status_code=500, detail="AI response was not valid JSON")
    except CapabilityError as e:
        raise HTTPException(status_code=500, detail=friendly_error_message(e))
    except (APIError, asyncio.TimeoutError) as e:
        if is_retryable(e):
            raise HTTPException(status_code=503, detail=RETRY_LATER)
        logger.error("AI call failed: %s", e)
        raise HTTPException(status_code=500, detail=friendly_error_message(e))


# Content-type family -> (wording, size limit)
UPLOAD_KINDS = {
    "image": ("an image", MAX_UPLOAD_BYTES),
    "video": ("a video", MAX_VIDEO_BYTES),
}


async def read_upload(upload: UploadFile, kind: str = "image") -> bytes:
    wording, max_bytes = UPLOAD_KINDS[kind]
    if not upload.content_type or not upload.content_type.startswith(f"{kind}/"):
        raise HTTPException(status_code=400, detail=f"File must be {wording}")
    content = await upload.read()
    if not content:
        raise HTTPException(status_code=400, detail=f"Empty {kind}")
    if len(content) > max_bytes:
        raise HTTPException(status_code=413, detail=f"{kind.capitalize()} too large")
    return content


def get_active_runtime(runtime: AppRuntime = Depends(get_runtime)) -> AppRuntime:
    """Runtime for endpoints that need a signed-in or guest session."""
    if runtime.session.identity is None and not runtime.session.guest:
        raise HTTPException(status_code=401, detail="Sign in or continue as guest first")
    return runtime


def require_remote(runtime: AppRuntime) -> RemoteStore:
    if runtime.remote is None:
        raise HTTPException(status_code=503, detail="Remote backend not configured")
    return runtime.remote


# ============================================================
# 5️⃣ Health + session
# ============================================================
@app.get("/health")
def health(runtime: AppRuntime = Depends(get_runtime)):
    return {
        "status": "ok",
        "remote_configured": runtime.remote is not None,
        "ai_configured": runtime.settings.ai_configured,
    }


@app.post("/session/start")
async def start_session(data: SessionStartInput, runtime: AppRuntime = Depends(get_runtime)):
    result = await runtime.reconciler.start(data.page_url)
    return reconcile_view(runtime, result)


@app.get("/session")
def get_session(runtime: AppRuntime = Depends(get_runtime)):
    return session_view(runtime)


# ============================================================
# 6️⃣ Auth
# ------------------------------------------------------------
# Signing in always re-runs reconciliation so remote data wins.
# ============================================================
async def _sign_in_and_reconcile(runtime: AppRuntime, action, data: CredentialsInput, auth_status: int):
    try:
        await action(data.email, data.password)
    except AuthError as e:
        raise HTTPException(status_code=auth_status, detail=friendly_error_message(e))
    except RemoteStoreError as e:
        logger.error("Auth backend failure: %s", e)
        raise HTTPException(status_code=503, detail=friendly_error_message(e))
    runtime.mirror.clear(GUEST_FLAG_KEY)
    result = await runtime.reconciler.start()
    return reconcile_view(runtime, result)


@app.post("/auth/register")
async def register(data: CredentialsInput, runtime: AppRuntime = Depends(get_runtime)):
    remote = require_remote(runtime)
    return await _sign_in_and_reconcile(runtime, remote.sign_up, data, 400)


@app.post("/auth/login")
async def login(data: CredentialsInput, runtime: AppRuntime = Depends(get_runtime)):
    remote = require_remote(runtime)
    return await _sign_in_and_reconcile(runtime, remote.sign_in, data, 401)


@app.post("/auth/guest")
def enter_guest(runtime: AppRuntime = Depends(get_runtime)):
    result = runtime.reconciler.enter_guest_mode()
    return reconcile_view(runtime, result)


@app.post("/auth/logout")
async def logout(runtime: AppRuntime = Depends(get_runtime)):
    outcome = await runtime.pipeline.logout()
    return outcome_response(runtime, outcome)


# ============================================================
# 7️⃣ Onboarding + payment
# ============================================================
@app.post("/onboarding")
async def complete_onboarding(profile: UserProfile, runtime: AppRuntime = Depends(get_active_runtime)):
    outcome = await runtime.pipeline.complete_onboarding(profile)
    return outcome_response(runtime, outcome, profile=runtime.session.profile.model_dump(mode="json"))


@app.post("/payment/checkout")
def create_checkout(runtime: AppRuntime = Depends(get_runtime)):
    order = create_payment_order(runtime.settings.checkout_url)
    if order.status == "failed":
        raise HTTPException(status_code=503, detail="Payment link not configured")
    return {"order_id": order.order_id, "status": order.status, "checkout_url": order.checkout_url}


@app.post("/payment/confirm")
async def confirm_payment(runtime: AppRuntime = Depends(get_active_runtime)):
    outcome = await runtime.pipeline.confirm_payment()
    return outcome_response(runtime, outcome)


# ============================================================
# 8️⃣ Analysis + plan
# ============================================================
@app.post("/analysis")
async def analyze_photo(image: UploadFile = File(...), runtime: AppRuntime = Depends(get_active_runtime)):
    content = await read_upload(image)
    outcome = await run_capability(runtime.pipeline.analyze_photo(content, image.content_type))
    analysis = runtime.session.analysis
    return outcome_response(runtime, outcome, analysis=analysis.model_dump(mode="json") if analysis else None)


def _plan_payload(runtime: AppRuntime) -> Optional[dict]:
    plan = runtime.session.plan
    return plan.model_dump(mode="json") if plan else None


@app.post("/plan/generate")
async def generate_plan(runtime: AppRuntime = Depends(get_active_runtime)):
    outcome = await run_capability(runtime.pipeline.generate_plan())
    return outcome_response(runtime, outcome, plan=_plan_payload(runtime))


@app.put("/plan")
async def update_plan(plan: Plan, runtime: AppRuntime = Depends(get_active_runtime)):
    outcome = await runtime.pipeline.update_plan(plan)
    return outcome_response(runtime, outcome, plan=_plan_payload(runtime))


@app.post("/plan/meals/regenerate")
async def regenerate_meal(data: MealRegenInput, runtime: AppRuntime = Depends(get_active_runtime)):
    outcome = await run_capability(runtime.pipeline.regenerate_meal(data.day, data.meal_index))
    return outcome_response(runtime, outcome, plan=_plan_payload(runtime))


@app.post("/plan/exercises/swap")
async def swap_exercise(data: ExerciseSwapInput, runtime: AppRuntime = Depends(get_active_runtime)):
    outcome = await run_capability(runtime.pipeline.swap_exercise(data.day, data.exercise_index))
    return outcome_response(runtime, outcome, plan=_plan_payload(runtime))


@app.post("/plan/workouts/regenerate")
async def regenerate_workout(data: WorkoutRegenInput, runtime: AppRuntime = Depends(get_active_runtime)):
    outcome = await run_capability(runtime.pipeline.regenerate_workout(data.day))
    return outcome_response(runtime, outcome, plan=_plan_payload(runtime))


# ============================================================
# 9️⃣ History (append-only)
# ============================================================
@app.post("/measurements")
async def log_measurement(data: MeasurementInput, runtime: AppRuntime = Depends(get_active_runtime)):
    outcome = await runtime.pipeline.log_measurement(data.weight)
    return outcome_response(runtime, outcome, count=len(runtime.session.measurements))


@app.post("/workouts")
async def log_workout(data: WorkoutInput, runtime: AppRuntime = Depends(get_active_runtime)):
    outcome = await runtime.pipeline.log_workout(data.day_number, data.duration_minutes, data.calories_burned)
    return outcome_response(runtime, outcome, count=len(runtime.session.workouts))


@app.get("/history")
def get_history(runtime: AppRuntime = Depends(get_runtime)):
    snapshot = runtime.session.snapshot()
    return {"measurements": snapshot["measurements"], "workouts": snapshot["workouts"]}


# ============================================================
# 🔟 GET /history/export
# ------------------------------------------------------------
# Exports measurements and workouts as a downloadable CSV file.
# ============================================================
@app.get("/history/export")
def export_history_csv(runtime: AppRuntime = Depends(get_runtime)):
    session = runtime.session
    rows = [("measurement", m.date, m.weight, "", "", "") for m in session.measurements]
    rows += [
        ("workout", w.date, "", w.day_number, w.duration_minutes, w.calories_burned)
        for w in session.workouts
    ]
    rows.sort(key=lambda row: row[1])

    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["type", "date", "weight", "day_number", "duration_minutes", "calories_burned"])
    for kind, date, *values in rows:
        writer.writerow([kind, date.isoformat(), *values])

    output.seek(0)
    return StreamingResponse(
        output,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=caloryia_history.csv"},
    )


# ============================================================
# 11️⃣ Coach chat, food photo + exercise form check
# ============================================================
@app.post("/chat")
async def chat(data: ChatInput, runtime: AppRuntime = Depends(get_active_runtime)):
    history = [turn.model_dump() for turn in data.history]
    reply = await run_capability(runtime.generator.send_chat_message(history, data.message))
    return {"reply": reply}


@app.post("/food/analyze")
async def analyze_food(image: UploadFile = File(...), runtime: AppRuntime = Depends(get_active_runtime)):
    content = await read_upload(image)
    meal: Meal = await run_capability(runtime.generator.analyze_food_image(content, image.content_type))
    return {"meal": meal.model_dump(mode="json")}


@app.post("/plan/exercises/form-check")
async def check_exercise_form(
    video: UploadFile = File(...),
    exercise_name: str = Form(..., min_length=1, max_length=200),
    runtime: AppRuntime = Depends(get_active_runtime),
):
    content = await read_upload(video, "video")
    feedback = await run_capability(
        runtime.generator.analyze_workout_video(content, video.content_type, exercise_name)
    )
    return {"exercise_name": exercise_name, "feedback": feedback}
