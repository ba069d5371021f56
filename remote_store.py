"""
Remote Store: the authoritative per-identity backend (auth + profile/plan/history).

``RemoteStore`` is the capability the rest of the runtime depends on;
``SqlRemoteStore`` implements it on SQLAlchemy so any database URL works.
"""
import hashlib
import hmac
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError

from db import AuthToken, HistoryRecord, PlanRecord, ProfileRecord, User
from local_mirror import AUTH_TOKEN_KEY

logger = logging.getLogger(__name__)

HISTORY_KINDS = ("measurement", "workout")
MIN_PASSWORD_LENGTH = 6

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"

AuthListener = Callable[[str, Optional["Identity"]], None]


@dataclass(frozen=True)
class Identity:
    user_id: int
    email: str
    access_token: str


class RemoteStoreError(Exception):
    """A remote read or write failed."""


class AuthError(RemoteStoreError):
    """Sign-up / sign-in refused. The message is the backend's own wording."""


class RemoteStore(ABC):
    def __init__(self):
        self._listeners: List[AuthListener] = []

    # -- auth state notifications -------------------------------------------
    def on_auth_state_change(self, callback: AuthListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self, event: str, identity: Optional[Identity]) -> None:
        for listener in list(self._listeners):
            listener(event, identity)

    # -- auth -----------------------------------------------------------------
    @abstractmethod
    async def get_session(self) -> Optional[Identity]: ...

    @abstractmethod
    async def sign_up(self, email: str, password: str) -> Identity: ...

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> Identity: ...

    @abstractmethod
    async def sign_out(self) -> None: ...

    # -- records --------------------------------------------------------------
    @abstractmethod
    async def get_profile(self, identity: Identity) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    async def put_profile(self, identity: Identity, profile: Dict[str, Any]) -> None: ...

    @abstractmethod
    async def get_active_plan(self, identity: Identity) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    async def deactivate_all_plans(self, identity: Identity) -> None: ...

    @abstractmethod
    async def insert_plan(self, identity: Identity, plan: Dict[str, Any], active: bool = True) -> None: ...

    @abstractmethod
    async def append_history(self, identity: Identity, kind: str, entry: Dict[str, Any]) -> None: ...

    @abstractmethod
    async def get_history(self, identity: Identity) -> Dict[str, List[Dict[str, Any]]]: ...


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 200_000)
    return f"{salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    salt, _, _ = stored.partition("$")
    return hmac.compare_digest(hash_password(password, salt), stored)


class SqlRemoteStore(RemoteStore):
    """
    Remote Store on a SQLAlchemy session factory.

    ``token_storage`` (a LocalMirror) keeps the access token across restarts,
    the way a hosted auth client persists its session.
    """

    def __init__(self, session_factory, token_storage=None):
        super().__init__()
        self.session_factory = session_factory
        self.token_storage = token_storage
        self._identity: Optional[Identity] = None

    async def _run(self, fn, *args):
        try:
            return await run_in_threadpool(fn, *args)
        except SQLAlchemyError as exc:
            raise RemoteStoreError(str(exc)) from exc

    # -- auth -----------------------------------------------------------------
    def _issue_token(self, db, user: User) -> Identity:
        token = secrets.token_urlsafe(32)
        db.add(AuthToken(token=token, user_id=user.id))
        db.commit()
        return Identity(user_id=user.id, email=user.email, access_token=token)

    def _sign_up(self, email: str, password: str) -> Identity:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise AuthError(f"Password should be at least {MIN_PASSWORD_LENGTH} characters")
        with self.session_factory() as db:
            if db.query(User).filter(User.email == email).first():
                raise AuthError("User already registered")
            user = User(email=email, password_hash=hash_password(password))
            db.add(user)
            db.flush()
            return self._issue_token(db, user)

    def _sign_in(self, email: str, password: str) -> Identity:
        with self.session_factory() as db:
            user = db.query(User).filter(User.email == email).first()
            if not user or not verify_password(password, user.password_hash):
                raise AuthError("Invalid login credentials")
            return self._issue_token(db, user)

    def _lookup_token(self, token: str) -> Optional[Identity]:
        with self.session_factory() as db:
            row = (
                db.query(AuthToken, User)
                .join(User, User.id == AuthToken.user_id)
                .filter(AuthToken.token == token)
                .first()
            )
            if not row:
                return None
            _, user = row
            return Identity(user_id=user.id, email=user.email, access_token=token)

    def _revoke_token(self, token: str) -> None:
        with self.session_factory() as db:
            db.query(AuthToken).filter(AuthToken.token == token).delete()
            db.commit()

    def _signed_in(self, identity: Identity) -> Identity:
        self._identity = identity
        if self.token_storage is not None:
            self.token_storage.save(AUTH_TOKEN_KEY, identity.access_token)
        self._notify(SIGNED_IN, identity)
        return identity

    async def sign_up(self, email: str, password: str) -> Identity:
        identity = await self._run(self._sign_up, email.strip().lower(), password)
        return self._signed_in(identity)

    async def sign_in(self, email: str, password: str) -> Identity:
        identity = await self._run(self._sign_in, email.strip().lower(), password)
        return self._signed_in(identity)

    async def sign_out(self) -> None:
        identity, self._identity = self._identity, None
        token = identity.access_token if identity else None
        if token is None and self.token_storage is not None:
            token = self.token_storage.load(AUTH_TOKEN_KEY)
        if self.token_storage is not None:
            self.token_storage.clear(AUTH_TOKEN_KEY)
        try:
            if isinstance(token, str):
                await self._run(self._revoke_token, token)
        finally:
            self._notify(SIGNED_OUT, None)

    async def get_session(self) -> Optional[Identity]:
        token = self._identity.access_token if self._identity else None
        if token is None and self.token_storage is not None:
            stored = self.token_storage.load(AUTH_TOKEN_KEY)
            token = stored if isinstance(stored, str) else None
        if token is None:
            return None

        identity = await self._run(self._lookup_token, token)
        if identity is None and self.token_storage is not None:
            # Revoked elsewhere
            self.token_storage.clear(AUTH_TOKEN_KEY)
        self._identity = identity
        return identity

    # -- records --------------------------------------------------------------
    def _get_profile(self, user_id: int) -> Optional[Dict[str, Any]]:
        with self.session_factory() as db:
            record = db.get(ProfileRecord, user_id)
            return dict(record.data) if record and record.data else None

    def _put_profile(self, user_id: int, profile: Dict[str, Any]) -> None:
        with self.session_factory() as db:
            record = db.get(ProfileRecord, user_id)
            if record is None:
                db.add(ProfileRecord(id=user_id, data=profile))
            else:
                record.data = profile
            db.commit()

    def _get_active_plan(self, user_id: int) -> Optional[Dict[str, Any]]:
        with self.session_factory() as db:
            record = (
                db.query(PlanRecord)
                .filter(PlanRecord.user_id == user_id, PlanRecord.active.is_(True))
                .order_by(PlanRecord.created_at.desc(), PlanRecord.id.desc())
                .first()
            )
            return dict(record.data) if record else None

    def _deactivate_all_plans(self, user_id: int) -> None:
        with self.session_factory() as db:
            db.query(PlanRecord).filter(PlanRecord.user_id == user_id).update({"active": False})
            db.commit()

    def _insert_plan(self, user_id: int, plan: Dict[str, Any], active: bool) -> None:
        with self.session_factory() as db:
            db.add(PlanRecord(user_id=user_id, active=active, data=plan))
            db.commit()

    def _append_history(self, user_id: int, kind: str, entry: Dict[str, Any]) -> None:
        with self.session_factory() as db:
            db.add(HistoryRecord(user_id=user_id, type=kind, date=str(entry.get("date", "")), data=entry))
            db.commit()

    def _get_history(self, user_id: int) -> Dict[str, List[Dict[str, Any]]]:
        with self.session_factory() as db:
            records = (
                db.query(HistoryRecord)
                .filter(HistoryRecord.user_id == user_id)
                .order_by(HistoryRecord.date.asc(), HistoryRecord.id.asc())
                .all()
            )
            return {
                "measurements": [dict(r.data) for r in records if r.type == "measurement"],
                "workouts": [dict(r.data) for r in records if r.type == "workout"],
            }

    async def get_profile(self, identity: Identity) -> Optional[Dict[str, Any]]:
        return await self._run(self._get_profile, identity.user_id)

    async def put_profile(self, identity: Identity, profile: Dict[str, Any]) -> None:
        await self._run(self._put_profile, identity.user_id, profile)

    async def get_active_plan(self, identity: Identity) -> Optional[Dict[str, Any]]:
        return await self._run(self._get_active_plan, identity.user_id)

    async def deactivate_all_plans(self, identity: Identity) -> None:
        await self._run(self._deactivate_all_plans, identity.user_id)

    async def insert_plan(self, identity: Identity, plan: Dict[str, Any], active: bool = True) -> None:
        await self._run(self._insert_plan, identity.user_id, plan, active)

    async def append_history(self, identity: Identity, kind: str, entry: Dict[str, Any]) -> None:
        if kind not in HISTORY_KINDS:
            raise ValueError(f"Unknown history kind: {kind}")
        await self._run(self._append_history, identity.user_id, kind, entry)

    async def get_history(self, identity: Identity) -> Dict[str, List[Dict[str, Any]]]:
        return await self._run(self._get_history, identity.user_id)
