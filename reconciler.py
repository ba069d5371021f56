"""
Startup reconciliation: decide which source is authoritative for this session.

    CHECKING -> GUEST_LOCAL           guest flag persisted: Local Mirror only
             -> ANONYMOUS             no remote configured, no identity, or failure
             -> REMOTE_AUTHENTICATED  identity present: remote wins, mirror heals gaps

Whatever happens, ``checking_complete`` ends up True so the UI never waits forever.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, List, Optional

from local_mirror import GUEST_FLAG_KEY, SESSION_KEY, LocalMirror
from payment import is_payment_approved, payment_status_from_url, strip_payment_marker
from remote_store import SIGNED_OUT, Identity, RemoteStore, RemoteStoreError
from schemas import AppStep, Plan, utcnow
from session_state import SessionState, landing_step, parse_or_none, parse_profile

logger = logging.getLogger(__name__)

PAYMENT_CONFIRMED = "Pagamento Confirmado! Acesso Liberado."

_FETCH_FAILED = object()


class ReconcileState(str, Enum):
    CHECKING = "checking"
    GUEST_LOCAL = "guest_local"
    REMOTE_AUTHENTICATED = "remote_authenticated"
    ANONYMOUS = "anonymous"


@dataclass
class ReconcileResult:
    state: ReconcileState = ReconcileState.CHECKING
    checking_complete: bool = False
    notices: List[str] = field(default_factory=list)
    clean_url: Optional[str] = None
    payment_confirmed: bool = False


def _same_owner(snapshot: Any, identity: Identity) -> bool:
    if not isinstance(snapshot, dict) or not isinstance(snapshot.get("profile"), dict):
        return False
    email = str(snapshot["profile"].get("email", "")).strip().lower()
    return bool(email) and email == identity.email.lower()


class Reconciler:
    def __init__(self, session: SessionState, mirror: LocalMirror, remote: Optional[RemoteStore] = None):
        self.session = session
        self.mirror = mirror
        self.remote = remote
        self.last_result: Optional[ReconcileResult] = None
        if remote is not None:
            remote.on_auth_state_change(self.handle_auth_event)

    def handle_auth_event(self, event: str, identity: Optional[Identity]) -> None:
        if event == SIGNED_OUT and not self.session.guest:
            self.session.reset()

    async def start(self, page_url: Optional[str] = None) -> ReconcileResult:
        result = ReconcileResult()
        session = self.session
        try:
            if self.mirror.load(GUEST_FLAG_KEY):
                self._restore_guest()
                result.state = ReconcileState.GUEST_LOCAL
            elif self.remote is None:
                session.reset()
                result.state = ReconcileState.ANONYMOUS
            else:
                identity = await self.remote.get_session()
                if identity is None:
                    session.reset()
                    result.state = ReconcileState.ANONYMOUS
                else:
                    await self._load_remote(identity, page_url, result)
                    result.state = ReconcileState.REMOTE_AUTHENTICATED
        except Exception:
            logger.exception("Startup reconciliation failed")
            if session.identity is not None:
                # Identity is known but its data is not: least-privileged step
                session.step = AppStep.ONBOARDING
                result.state = ReconcileState.REMOTE_AUTHENTICATED
            else:
                session.reset()
                result.state = ReconcileState.ANONYMOUS
        finally:
            result.checking_complete = True
            self.last_result = result
        return result

    def enter_guest_mode(self) -> ReconcileResult:
        self.mirror.save(GUEST_FLAG_KEY, True)
        self._restore_guest()
        result = ReconcileResult(state=ReconcileState.GUEST_LOCAL, checking_complete=True)
        self.last_result = result
        return result

    def _restore_guest(self) -> None:
        self.session.reset()
        self.session.guest = True
        self.session.restore(self.mirror.load(SESSION_KEY))

    async def _guarded(self, awaitable: Awaitable[Any], default: Any, label: str) -> Any:
        try:
            return await awaitable
        except Exception as exc:
            logger.warning("Startup fetch of %s failed, using default: %s", label, exc)
            return default

    async def _load_remote(self, identity: Identity, page_url: Optional[str], result: ReconcileResult) -> None:
        session = self.session
        session.reset()
        session.identity = identity

        profile_raw, plan_raw, history = await asyncio.gather(
            self._guarded(self.remote.get_profile(identity), None, "profile"),
            self._guarded(self.remote.get_active_plan(identity), _FETCH_FAILED, "plan"),
            self._guarded(self.remote.get_history(identity), {"measurements": [], "workouts": []}, "history"),
        )

        plan_fetched = plan_raw is not _FETCH_FAILED
        profile = parse_profile(profile_raw)
        plan = parse_or_none(Plan, plan_raw) if plan_fetched else None
        local = self.mirror.load(SESSION_KEY)
        local_is_ours = _same_owner(local, identity)

        if profile is not None:
            session.set_profile(profile)
            if local_is_ours:
                await self._heal_payment(identity, local)

            if is_payment_approved(page_url) and not session.profile.has_paid:
                session.profile = session.profile.model_copy(
                    update={"has_paid": True, "payment_date": utcnow().isoformat()}
                )
                await self._push_profile(identity)
                result.notices.append(PAYMENT_CONFIRMED)
                result.payment_confirmed = True

            # Only a marker that was acted on may leave the URL
            if page_url and payment_status_from_url(page_url) is not None:
                result.clean_url = strip_payment_marker(page_url)

        if plan is None and plan_fetched and local_is_ours:
            plan = await self._heal_plan(identity, local)

        session.plan = plan
        history = history if isinstance(history, dict) else {}
        session.replace_history(history.get("measurements"), history.get("workouts"))
        session.step = landing_step(session.profile, session.plan)
        self.mirror.save(SESSION_KEY, session.snapshot())

    async def _push_profile(self, identity: Identity) -> bool:
        try:
            await self.remote.put_profile(identity, self.session.profile.model_dump(mode="json"))
        except RemoteStoreError as exc:
            logger.warning("Could not persist profile during startup: %s", exc)
            return False
        return True

    async def _heal_payment(self, identity: Identity, local: dict) -> None:
        """A paid local copy means an earlier payment write never reached the remote."""
        local_profile = parse_profile(local.get("profile"))
        if local_profile is None or not local_profile.has_paid or self.session.profile.has_paid:
            return
        self.session.profile = self.session.profile.model_copy(
            update={"has_paid": True, "payment_date": local_profile.payment_date}
        )
        logger.info("Re-pushing payment latch from local mirror")
        await self._push_profile(identity)

    async def _heal_plan(self, identity: Identity, local: dict) -> Optional[Plan]:
        """Remote lost the active plan (failed insert after deactivation): restore ours."""
        plan = parse_or_none(Plan, local.get("plan"))
        if plan is None:
            return None
        logger.info("Re-activating plan %s from local mirror", plan.id)
        try:
            await self.remote.deactivate_all_plans(identity)
            await self.remote.insert_plan(identity, plan.model_dump(mode="json"), active=True)
        except RemoteStoreError as exc:
            logger.warning("Plan re-activation failed, keeping local copy: %s", exc)
        return plan
