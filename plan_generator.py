"""
PlanGenerator: body analysis, plan generation and the smaller regeneration calls.

The calorie arithmetic (Harris-Benedict BMR, activity multipliers, cut/bulk
adjustment) is computed here; only the plan content comes from the model.
"""
import base64
import logging
import math
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError

from ai_caller import ResponseParseError, RetryableCaller, parse_json_response
from schemas import AnalysisResult, Exercise, Meal, Plan, UserProfile, WorkoutUpdate

logger = logging.getLogger(__name__)

ACTIVITY_MULTIPLIERS = {
    "sedentary": 1.2,
    "light": 1.375,
    "moderate": 1.55,
    "active": 1.725,
    "athlete": 1.9,
}
DEFAULT_ACTIVITY_MULTIPLIER = 1.2
CUTTING_BODY_FAT_THRESHOLD = 20
CUTTING_DEFICIT = 500
BULKING_SURPLUS = 300
DEFAULT_BIRTH_YEAR = 1990
MIN_PLAN_DAYS = 7
NO_REPLY = "Sem resposta."
NO_FORM_ANALYSIS = "Análise indisponível."


# ============================================================
# Calorie math
# ============================================================
def birth_year(birth_date: str) -> int:
    """Year from ``dd/mm/yyyy`` (the form's format) or ISO ``yyyy-mm-dd``."""
    text = (birth_date or "").strip()
    try:
        if "/" in text:
            return int(text.split("/")[2])
        if "-" in text:
            return int(text.split("-")[0])
    except (IndexError, ValueError):
        pass
    return DEFAULT_BIRTH_YEAR


def age_from_birth_date(birth_date: str, today: Optional[date] = None) -> int:
    today = today or date.today()
    return today.year - birth_year(birth_date)


def calculate_bmr(gender: str, weight: float, height: float, age: int) -> float:
    if gender == "male":
        return 88.362 + (13.397 * weight) + (4.799 * height) - (5.677 * age)
    return 447.593 + (9.247 * weight) + (3.098 * height) - (4.330 * age)


def calculate_tdee(bmr: float, activity_level: str) -> int:
    multiplier = ACTIVITY_MULTIPLIERS.get(activity_level, DEFAULT_ACTIVITY_MULTIPLIER)
    return math.floor(bmr * multiplier + 0.5)


def calculate_target_calories(tdee: int, estimated_body_fat: float) -> int:
    if estimated_body_fat > CUTTING_BODY_FAT_THRESHOLD:
        return tdee - CUTTING_DEFICIT
    return tdee + BULKING_SURPLUS


@dataclass(frozen=True)
class CalorieTargets:
    age: int
    bmr: float
    tdee: int
    target_calories: int
    is_cutting: bool


def compute_calorie_targets(analysis: AnalysisResult, profile: UserProfile, today: Optional[date] = None) -> CalorieTargets:
    age = age_from_birth_date(profile.birth_date, today)
    bmr = calculate_bmr(profile.gender, profile.weight, profile.height, age)
    tdee = calculate_tdee(bmr, profile.activity_level)
    return CalorieTargets(
        age=age,
        bmr=bmr,
        tdee=tdee,
        target_calories=calculate_target_calories(tdee, analysis.estimated_body_fat),
        is_cutting=analysis.estimated_body_fat > CUTTING_BODY_FAT_THRESHOLD,
    )


# ============================================================
# Prompts
# ============================================================
ANALYSIS_PROMPT = """Analyze this body photo for fitness planning.
Return only JSON with keys:
  body_type: one of "Ectomorph", "Mesomorph", "Endomorph", "Unknown"
  estimated_body_fat: number (percent)
  posture_notes: string
  focus_areas: array of strings
  recommendation_summary: string"""

FOOD_PROMPT = """Analyze the food in this photo and estimate its macros.
Return only JSON: {"name": str, "calories": number, "protein": number, "carbs": number, "fats": number, "items": [str]}"""

PLAN_PROMPT = """You are an elite fitness coach AI. Create a detailed plan.
User: {gender}, {weight}kg, {height}cm, Age {age}.
Goal: {target_calories} kcal/day ({phase}).
Restrictions: {restrictions}.
Injuries: {injuries}.
Location: {state}, {country}.

Return only JSON with keys: id, goal, goals[], duration_days, summary,
weekly_summaries[{{week, summary}}], daily_plans[{{day, workout_focus, duration_min,
total_calories, exercises[{{name, sets, reps, notes}}], meals[{{name, items[], calories,
protein, carbs, fats}}]}}].
Ensure at least {min_days} daily plans."""

MEAL_PROMPT = """Create a new meal replacing "{name}" with about the same calories ({calories} kcal).
Restrictions: {restrictions}.
Return only JSON: {{"name": str, "items": [str], "calories": number, "protein": number, "carbs": number, "fats": number}}"""

EXERCISE_PROMPT = """Substitute the exercise "{name}" ({sets} sets of {reps}) in a "{focus}" session.
Activity level: {activity}. Injuries: {injuries}.
Return only JSON: {{"name": str, "sets": int, "reps": str, "notes": str}}"""

WORKOUT_PROMPT = """Create a new workout for day {day} (current focus: "{focus}").
Activity level: {activity}. Injuries: {injuries}.
Return only JSON: {{"exercises": [{{"name": str, "sets": int, "reps": str, "notes": str}}], "total_calories": number, "workout_focus": str}}"""

FORM_CHECK_PROMPT = """Analyze the form in this video of "{exercise}". Give brief, practical tips."""


def _data_url(content: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(content).decode('ascii')}"


def _validate(model: Type[BaseModel], data: Any):
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ResponseParseError(f"AI response did not match {model.__name__}: {exc.error_count()} errors") from exc


class PlanGenerator:
    def __init__(self, caller: RetryableCaller, model: str = "gpt-4o-mini"):
        self.caller = caller
        self.model = model

    async def _complete_json(self, messages: List[Dict[str, Any]], temperature: float = 0.3) -> Any:
        async def operation(client):
            response = await client.chat.completions.create(
                model=self.model,
                messages=messages,
                response_format={"type": "json_object"},
                temperature=temperature,
            )
            return parse_json_response(response.choices[0].message.content)

        return await self.caller.call(operation)

    async def _describe_image(self, prompt: str, image_bytes: bytes, mime_type: str) -> Any:
        return await self._complete_json([
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": _data_url(image_bytes, mime_type)}},
                ],
            }
        ])

    async def analyze_image(self, image_bytes: bytes, mime_type: str) -> AnalysisResult:
        data = await self._describe_image(ANALYSIS_PROMPT, image_bytes, mime_type)
        return _validate(AnalysisResult, data)

    async def analyze_food_image(self, image_bytes: bytes, mime_type: str) -> Meal:
        data = await self._describe_image(FOOD_PROMPT, image_bytes, mime_type)
        return _validate(Meal, data)

    async def generate_plan(self, analysis: AnalysisResult, profile: UserProfile) -> Plan:
        targets = compute_calorie_targets(analysis, profile)
        prompt = PLAN_PROMPT.format(
            gender=profile.gender,
            weight=profile.weight,
            height=profile.height,
            age=targets.age,
            target_calories=targets.target_calories,
            phase="cutting" if targets.is_cutting else "lean bulk",
            restrictions=profile.dietary_restrictions or "None",
            injuries=profile.medical_conditions or "None",
            state=profile.state,
            country=profile.country,
            min_days=MIN_PLAN_DAYS,
        )
        data = await self._complete_json([{"role": "user", "content": prompt}])
        plan = _validate(Plan, data)
        if len(plan.daily_plans) < MIN_PLAN_DAYS:
            logger.warning("Generated plan has only %d daily plans", len(plan.daily_plans))
        plan.target_calories = targets.target_calories
        return plan

    async def regenerate_meal(self, meal: Meal, profile: UserProfile) -> Meal:
        prompt = MEAL_PROMPT.format(
            name=meal.name,
            calories=round(meal.calories),
            restrictions=profile.dietary_restrictions or "None",
        )
        data = await self._complete_json([{"role": "user", "content": prompt}], temperature=0.8)
        return _validate(Meal, data)

    async def swap_exercise(self, exercise: Exercise, profile: UserProfile, focus: str) -> Exercise:
        prompt = EXERCISE_PROMPT.format(
            name=exercise.name,
            sets=exercise.sets,
            reps=exercise.reps,
            focus=focus,
            activity=profile.activity_level,
            injuries=profile.medical_conditions or "None",
        )
        data = await self._complete_json([{"role": "user", "content": prompt}], temperature=0.8)
        return _validate(Exercise, data)

    async def regenerate_workout(self, day: int, focus: str, profile: UserProfile) -> WorkoutUpdate:
        prompt = WORKOUT_PROMPT.format(
            day=day,
            focus=focus,
            activity=profile.activity_level,
            injuries=profile.medical_conditions or "None",
        )
        data = await self._complete_json([{"role": "user", "content": prompt}], temperature=0.8)
        return _validate(WorkoutUpdate, data)

    async def _complete_text(self, messages: List[Dict[str, Any]]) -> Optional[str]:
        async def operation(client):
            response = await client.chat.completions.create(model=self.model, messages=messages)
            return response.choices[0].message.content

        return await self.caller.call(operation)

    async def send_chat_message(self, history: List[Dict[str, str]], message: str) -> str:
        # Older clients stored the coach's turns as "model"
        messages = [
            {"role": "assistant" if h["role"] == "model" else h["role"], "content": h["content"]}
            for h in history
        ]
        messages.append({"role": "user", "content": message})
        reply = await self._complete_text(messages)
        return reply or NO_REPLY

    async def analyze_workout_video(self, video_bytes: bytes, mime_type: str, exercise_name: str) -> str:
        """Form tips for one exercise from a clip of the user performing it."""
        reply = await self._complete_text([
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": FORM_CHECK_PROMPT.format(exercise=exercise_name)},
                    {
                        "type": "file",
                        "file": {"filename": "form-check", "file_data": _data_url(video_bytes, mime_type)},
                    },
                ],
            }
        ])
        return reply or NO_FORM_ANALYSIS
