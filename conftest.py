"""
Shared pytest fixtures: sample records, a fake OpenAI client and an in-memory Remote Store.
"""
import copy
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from openai import APIStatusError, RateLimitError

from remote_store import SIGNED_IN, SIGNED_OUT, AuthError, Identity, RemoteStore


# ---------------------------------------------------------------------------
# OpenAI response fakes
# ---------------------------------------------------------------------------
def make_openai_response(content):
    mock_message = MagicMock()
    mock_message.content = content
    mock_choice = MagicMock()
    mock_choice.message = mock_message
    mock_response = MagicMock()
    mock_response.choices = [mock_choice]
    return mock_response


def make_ai_client(*contents):
    """Client whose ``chat.completions.create`` answers with ``contents`` in order (exceptions are raised)."""
    client = MagicMock()
    client.chat.completions.create = AsyncMock(
        side_effect=[c if isinstance(c, BaseException) else make_openai_response(c) for c in contents]
    )
    return client


def rate_limit_error(message="Rate limit reached for requests"):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    return RateLimitError(message, response=httpx.Response(429, request=request), body=None)


def status_error(status, message="Upstream error"):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    return APIStatusError(message, response=httpx.Response(status, request=request), body=None)


# ---------------------------------------------------------------------------
# Sample records
# ---------------------------------------------------------------------------
PROFILE = {
    "name": "Ana Souza",
    "email": "ana@example.com",
    "birth_date": "15/05/1994",
    "gender": "female",
    "height": 165,
    "weight": 70,
    "activity_level": "moderate",
    "dietary_restrictions": "lactose",
    "country": "Brasil",
    "state": "SP",
}

ANALYSIS = {
    "body_type": "Endomorph",
    "estimated_body_fat": 28,
    "posture_notes": "Slight anterior pelvic tilt",
    "focus_areas": ["core", "glutes"],
    "recommendation_summary": "Moderate deficit with strength training.",
}


def make_plan(plan_id="plan-1", days=7):
    return {
        "id": plan_id,
        "goal": "Fat loss",
        "goals": ["Lose 4kg", "Improve posture"],
        "duration_days": days,
        "summary": "Four strength days, three active recovery days.",
        "weekly_summaries": [{"week": 1, "summary": "Adaptation"}],
        "daily_plans": [
            {
                "day": n,
                "workout_focus": "Full body" if n % 2 else "Mobility",
                "duration_min": 45,
                "total_calories": 1800,
                "exercises": [
                    {"name": "Squat", "sets": 3, "reps": "12", "notes": ""},
                    {"name": "Plank", "sets": 3, "reps": "40s"},
                ],
                "meals": [
                    {"name": "Breakfast", "items": ["Eggs", "Papaya"], "calories": 400, "protein": 25, "carbs": 30, "fats": 15},
                    {"name": "Lunch", "items": ["Rice", "Beans", "Chicken"], "calories": 650, "protein": 45, "carbs": 70, "fats": 15},
                ],
            }
            for n in range(1, days + 1)
        ],
    }


MEAL = {"name": "Tapioca with cheese", "items": ["Tapioca", "Minas cheese"], "calories": 410, "protein": 18, "carbs": 55, "fats": 12}
EXERCISE = {"name": "Goblet squat", "sets": 4, "reps": "10", "notes": "Slow eccentric"}
WORKOUT = {
    "exercises": [{"name": "Bike intervals", "sets": 8, "reps": "30s", "notes": "Hard effort"}],
    "total_calories": 320,
    "workout_focus": "Conditioning",
}


@pytest.fixture
def profile_data():
    return copy.deepcopy(PROFILE)


@pytest.fixture
def analysis_data():
    return copy.deepcopy(ANALYSIS)


@pytest.fixture
def plan_data():
    return make_plan()


# ---------------------------------------------------------------------------
# In-memory Remote Store
# ---------------------------------------------------------------------------
class FakeRemoteStore(RemoteStore):
    """
    Dict-backed RemoteStore. Put an exception in ``failures[method_name]``
    to make that method raise it.
    """

    def __init__(self):
        super().__init__()
        self.users = {}
        self.profiles = {}
        self.plans = []
        self.history = []
        self.failures = {}
        self.calls = []
        self.identity = None

    def _enter(self, name):
        self.calls.append(name)
        if name in self.failures:
            raise self.failures[name]

    def login_as(self, email="ana@example.com", user_id=1):
        self.identity = Identity(user_id=user_id, email=email, access_token=f"token-{user_id}")
        return self.identity

    def active_plans(self, user_id=1):
        return [p["data"] for p in self.plans if p["user_id"] == user_id and p["active"]]

    async def get_session(self):
        self._enter("get_session")
        return self.identity

    async def sign_up(self, email, password):
        self._enter("sign_up")
        if email in self.users:
            raise AuthError("User already registered")
        self.users[email] = password
        identity = self.login_as(email, user_id=len(self.users))
        self._notify(SIGNED_IN, identity)
        return identity

    async def sign_in(self, email, password):
        self._enter("sign_in")
        if self.users.get(email) != password:
            raise AuthError("Invalid login credentials")
        identity = self.login_as(email, user_id=list(self.users).index(email) + 1)
        self._notify(SIGNED_IN, identity)
        return identity

    async def sign_out(self):
        self._enter("sign_out")
        self.identity = None
        self._notify(SIGNED_OUT, None)

    async def get_profile(self, identity):
        self._enter("get_profile")
        return copy.deepcopy(self.profiles.get(identity.user_id))

    async def put_profile(self, identity, profile):
        self._enter("put_profile")
        self.profiles[identity.user_id] = copy.deepcopy(profile)

    async def get_active_plan(self, identity):
        self._enter("get_active_plan")
        active = self.active_plans(identity.user_id)
        return copy.deepcopy(active[-1]) if active else None

    async def deactivate_all_plans(self, identity):
        self._enter("deactivate_all_plans")
        for record in self.plans:
            if record["user_id"] == identity.user_id:
                record["active"] = False

    async def insert_plan(self, identity, plan, active=True):
        self._enter("insert_plan")
        self.plans.append({"user_id": identity.user_id, "active": active, "data": copy.deepcopy(plan)})

    async def append_history(self, identity, kind, entry):
        self._enter("append_history")
        self.history.append({"user_id": identity.user_id, "type": kind, "data": copy.deepcopy(entry)})

    async def get_history(self, identity):
        self._enter("get_history")
        rows = sorted((h for h in self.history if h["user_id"] == identity.user_id), key=lambda h: h["data"]["date"])
        return {
            "measurements": [h["data"] for h in rows if h["type"] == "measurement"],
            "workouts": [h["data"] for h in rows if h["type"] == "workout"],
        }


@pytest.fixture
def fake_remote():
    return FakeRemoteStore()
