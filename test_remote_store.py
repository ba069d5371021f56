"""
SqlRemoteStore tests against an isolated SQLite file per test.
Run with: pytest test_remote_store.py -v
"""
import asyncio

import pytest

from conftest import PROFILE, make_plan
from db import init_db, make_engine, make_session_factory
from local_mirror import AUTH_TOKEN_KEY, LocalMirror
from remote_store import SIGNED_IN, SIGNED_OUT, AuthError, SqlRemoteStore, hash_password, verify_password


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'remote.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def mirror(tmp_path):
    return LocalMirror(tmp_path / "mirror")


@pytest.fixture
def store(engine, mirror):
    return SqlRemoteStore(make_session_factory(engine), token_storage=mirror)


def run(coro):
    return asyncio.run(coro)


class TestPasswords:
    def test_hash_and_verify(self):
        stored = hash_password("segredo123")
        assert stored != "segredo123"
        assert verify_password("segredo123", stored)
        assert not verify_password("errada", stored)

    def test_salted(self):
        assert hash_password("segredo123") != hash_password("segredo123")


class TestAuth:
    def test_sign_up_and_session(self, store, mirror):
        identity = run(store.sign_up("Ana@Example.com", "segredo123"))
        assert identity.email == "ana@example.com"
        assert mirror.load(AUTH_TOKEN_KEY) == identity.access_token
        assert run(store.get_session()) == identity

    def test_duplicate_sign_up(self, store):
        run(store.sign_up("ana@example.com", "segredo123"))
        with pytest.raises(AuthError, match="already registered"):
            run(store.sign_up("ANA@example.com", "outra1234"))

    def test_short_password(self, store):
        with pytest.raises(AuthError, match="at least 6"):
            run(store.sign_up("ana@example.com", "12345"))

    def test_sign_in(self, store):
        run(store.sign_up("ana@example.com", "segredo123"))
        identity = run(store.sign_in("ana@example.com", "segredo123"))
        assert identity.user_id == 1

    def test_wrong_password(self, store):
        run(store.sign_up("ana@example.com", "segredo123"))
        with pytest.raises(AuthError, match="Invalid login credentials"):
            run(store.sign_in("ana@example.com", "errada123"))

    def test_session_survives_restart(self, engine, mirror, store):
        identity = run(store.sign_up("ana@example.com", "segredo123"))
        restarted = SqlRemoteStore(make_session_factory(engine), token_storage=mirror)
        assert run(restarted.get_session()) == identity

    def test_sign_out_revokes_token(self, engine, mirror, store):
        run(store.sign_up("ana@example.com", "segredo123"))
        run(store.sign_out())
        assert run(store.get_session()) is None
        assert mirror.load(AUTH_TOKEN_KEY) is None

    def test_no_session(self, store):
        assert run(store.get_session()) is None

    def test_auth_events(self, store):
        events = []
        unsubscribe = store.on_auth_state_change(lambda event, identity: events.append(event))
        run(store.sign_up("ana@example.com", "segredo123"))
        run(store.sign_out())
        unsubscribe()
        run(store.sign_in("ana@example.com", "segredo123"))
        assert events == [SIGNED_IN, SIGNED_OUT]


class TestRecords:
    def test_profile_upsert(self, store):
        identity = run(store.sign_up("ana@example.com", "segredo123"))
        assert run(store.get_profile(identity)) is None
        run(store.put_profile(identity, dict(PROFILE)))
        run(store.put_profile(identity, dict(PROFILE, has_paid=True)))
        assert run(store.get_profile(identity))["has_paid"] is True

    def test_active_plan_is_newest_active(self, store):
        identity = run(store.sign_up("ana@example.com", "segredo123"))
        run(store.insert_plan(identity, make_plan("first")))
        run(store.deactivate_all_plans(identity))
        run(store.insert_plan(identity, make_plan("second")))
        assert run(store.get_active_plan(identity))["id"] == "second"

    def test_no_active_plan_after_deactivation(self, store):
        identity = run(store.sign_up("ana@example.com", "segredo123"))
        run(store.insert_plan(identity, make_plan("first")))
        run(store.deactivate_all_plans(identity))
        assert run(store.get_active_plan(identity)) is None

    def test_history_ordered_and_split(self, store):
        identity = run(store.sign_up("ana@example.com", "segredo123"))
        run(store.append_history(identity, "measurement", {"date": "2026-10-03T08:00:00+00:00", "weight": 69}))
        run(store.append_history(identity, "measurement", {"date": "2026-10-01T08:00:00+00:00", "weight": 70}))
        run(store.append_history(
            identity,
            "workout",
            {"date": "2026-10-02T18:00:00+00:00", "day_number": 1, "duration_minutes": 45, "calories_burned": 300},
        ))
        history = run(store.get_history(identity))
        assert [m["weight"] for m in history["measurements"]] == [70, 69]
        assert history["workouts"][0]["day_number"] == 1

    def test_unknown_history_kind(self, store):
        identity = run(store.sign_up("ana@example.com", "segredo123"))
        with pytest.raises(ValueError):
            run(store.append_history(identity, "meal", {"date": "2026-10-01"}))

    def test_records_are_per_identity(self, store):
        ana = run(store.sign_up("ana@example.com", "segredo123"))
        bruno = run(store.sign_up("bruno@example.com", "segredo123"))
        run(store.put_profile(ana, dict(PROFILE)))
        run(store.insert_plan(ana, make_plan("ana-plan")))
        assert run(store.get_profile(bruno)) is None
        assert run(store.get_active_plan(bruno)) is None
