"""
Schema normalizer + session state tests: defaults, forward compatibility and the payment latch.
Run with: pytest test_schema_normalizer.py -v
"""
from datetime import datetime, timedelta, timezone

from schema_normalizer import DEFAULT_PROFILE, apply_payment_latch, normalize
from schemas import AppStep, MeasurementEntry, Plan, UserProfile
from session_state import SessionState, landing_step, parse_profile


class TestNormalize:
    def test_missing_fields_filled_from_defaults(self):
        merged = normalize({"name": "Ana"}, DEFAULT_PROFILE)
        assert merged["name"] == "Ana"
        assert merged["has_paid"] is False
        assert merged["country"] == "Brasil"
        assert merged["language"] == "pt"

    def test_stored_values_win(self):
        merged = normalize({"country": "Portugal", "has_paid": True}, DEFAULT_PROFILE)
        assert merged["country"] == "Portugal"
        assert merged["has_paid"] is True

    def test_unknown_fields_preserved(self):
        merged = normalize({"favorite_sport": "surf"}, DEFAULT_PROFILE)
        assert merged["favorite_sport"] == "surf"

    def test_none_gives_defaults(self):
        assert normalize(None, DEFAULT_PROFILE) == DEFAULT_PROFILE

    def test_idempotent(self):
        for raw in (None, {}, {"name": "Ana"}, {"has_paid": True, "extra": [1, 2]}):
            once = normalize(raw, DEFAULT_PROFILE)
            assert normalize(once, DEFAULT_PROFILE) == once

    def test_defaults_not_mutated(self):
        normalize({"has_paid": True}, DEFAULT_PROFILE)
        assert DEFAULT_PROFILE["has_paid"] is False


class TestPaymentLatch:
    def test_paid_cannot_be_revoked(self):
        current = {"has_paid": True, "payment_date": "2026-01-10T12:00:00+00:00"}
        result = apply_payment_latch(current, {"has_paid": False, "payment_date": "", "name": "Ana"})
        assert result["has_paid"] is True
        assert result["payment_date"] == "2026-01-10T12:00:00+00:00"
        assert result["name"] == "Ana"

    def test_unpaid_current_changes_nothing(self):
        incoming = {"has_paid": False}
        assert apply_payment_latch({"has_paid": False}, incoming) == incoming
        assert apply_payment_latch(None, incoming) == incoming

    def test_session_set_profile_keeps_latch(self, profile_data):
        session = SessionState()
        session.set_profile(UserProfile(**{**profile_data, "has_paid": True, "payment_date": "2026-02-01"}))
        session.set_profile(UserProfile(**profile_data))
        assert session.profile.has_paid is True
        assert session.profile.payment_date == "2026-02-01"


class TestParseProfile:
    def test_legacy_record_loads(self):
        legacy = {
            "name": "Carlos",
            "email": "carlos@example.com",
            "birth_date": "01/01/1990",
            "gender": "male",
            "height": 180,
            "weight": 80,
        }
        profile = parse_profile(legacy)
        assert profile.has_paid is False
        assert profile.activity_level == "moderate"

    def test_newer_record_keeps_extra_fields(self, profile_data):
        profile = parse_profile({**profile_data, "wearable": "garmin"})
        assert profile.model_dump()["wearable"] == "garmin"

    def test_malformed_record_is_absent(self):
        assert parse_profile({"name": "no email, no height"}) is None
        assert parse_profile(None) is None


class TestLandingStep:
    def test_plan_wins(self, profile_data, plan_data):
        assert landing_step(UserProfile(**profile_data), Plan(**plan_data)) == AppStep.PLAN

    def test_no_profile(self):
        assert landing_step(None, None) == AppStep.ONBOARDING

    def test_paid_goes_to_upload(self, profile_data):
        assert landing_step(UserProfile(**profile_data, has_paid=True), None) == AppStep.UPLOAD

    def test_unpaid_goes_to_payment(self, profile_data):
        assert landing_step(UserProfile(**profile_data), None) == AppStep.PAYMENT


class TestSessionState:
    def test_history_stays_chronological(self):
        session = SessionState()
        now = datetime.now(timezone.utc)
        session.add_measurement(MeasurementEntry(date=now, weight=70))
        session.add_measurement(MeasurementEntry(date=now - timedelta(days=2), weight=72))
        session.add_measurement(MeasurementEntry(date=now - timedelta(days=1), weight=71))
        assert [m.weight for m in session.measurements] == [72, 71, 70]

    def test_replace_history_sorts_and_skips_garbage(self):
        session = SessionState()
        session.replace_history(
            [
                {"date": "2026-03-02T10:00:00Z", "weight": 70},
                {"date": "2026-03-01T10:00:00Z", "weight": 71},
                {"date": "not a date", "weight": 1},
            ],
            None,
        )
        assert [m.weight for m in session.measurements] == [71, 70]
        assert session.workouts == []

    def test_naive_dates_are_utc(self):
        entry = MeasurementEntry(date=datetime(2026, 3, 1, 10, 0), weight=70)
        assert entry.date.tzinfo == timezone.utc

    def test_snapshot_restore(self, profile_data, plan_data):
        session = SessionState()
        session.set_profile(UserProfile(**profile_data))
        session.plan = Plan(**plan_data)
        session.add_measurement(MeasurementEntry(weight=70))
        snapshot = session.snapshot()

        restored = SessionState()
        restored.restore(snapshot)
        assert restored.profile == session.profile
        assert restored.plan == session.plan
        assert len(restored.measurements) == 1
        assert restored.step == AppStep.PLAN

    def test_restore_tolerates_garbage(self):
        session = SessionState()
        session.restore({"profile": "nope", "plan": 42})
        assert session.profile is None
        assert session.plan is None
        assert session.step == AppStep.ONBOARDING

    def test_reset_bumps_generation(self, profile_data):
        session = SessionState(profile=UserProfile(**profile_data), guest=True)
        before = session.generation
        session.reset()
        assert session.generation == before + 1
        assert session.profile is None
        assert session.guest is False
        assert session.step == AppStep.HOME
