"""
Local free-trial clock.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

from shared.errors import NotAuthenticated, StorageUnavailable
from shared.logging import get_logger
from ..models import AuthSession, TrialState, utcnow
from ..storage.kv_store import KeyValueStore, LAST_USER_KEY, backend_record_key, trial_key


class TrialClock:
    """Persists one "trial started at" timestamp per user.

    ``start`` is idempotent: the timestamp is written at most once per user.
    Activity and remaining days are pure functions of the stored timestamp
    and the wall clock.
    """

    def __init__(self,
                 store: KeyValueStore,
                 session: AuthSession,
                 duration: timedelta = timedelta(days=3),
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.session = session
        self.duration = duration
        self.clock = clock
        self.logger = get_logger("reconciler.trial_clock")

    def _user_id(self) -> str:
        if not self.session.is_authenticated:
            raise NotAuthenticated("Trial cannot start for an anonymous session")
        return self.session.user_id

    async def start(self) -> TrialState:
        """Start the trial for the current user unless it already started."""
        user_id = self._user_id()
        now = self.clock()
        written = await self.store.set_if_absent(trial_key(user_id), now.isoformat())
        if written:
            self.logger.info("Trial started", user_id=user_id, started_at=now.isoformat())
        else:
            self.logger.debug("Trial already started", user_id=user_id)
        return await self.state()

    async def state(self) -> TrialState:
        """Load the trial state for the current user.

        Anonymous sessions have no trial. Raises ``StorageUnavailable`` when
        the store cannot be read; callers treat that as unknown, not inactive.
        """
        if not self.session.is_authenticated:
            return TrialState(duration=self.duration)
        raw = await self.store.get(trial_key(self.session.user_id))
        if raw is None:
            return TrialState(duration=self.duration)
        try:
            started_at = datetime.fromisoformat(raw)
        except (TypeError, ValueError) as e:
            raise StorageUnavailable("Unreadable trial timestamp", {"value": raw}) from e
        return TrialState(started_at=started_at, duration=self.duration)

    async def is_active(self, now: Optional[datetime] = None) -> bool:
        state = await self.state()
        return state.is_active(now or self.clock())

    async def days_remaining(self, now: Optional[datetime] = None) -> int:
        state = await self.state()
        return state.days_remaining(now or self.clock())

    async def on_login(self, user_id: str) -> bool:
        """Record ``user_id`` as the device's user.

        When a different user previously logged in on this device, that
        user's local trial and cached backend record are cleared. Returns
        True on an account switch. Logging the same user out and back in
        clears nothing, so it never grants a fresh trial.
        """
        previous = await self.store.get(LAST_USER_KEY)
        switched = previous is not None and previous != user_id
        if switched:
            await self.store.delete(trial_key(previous))
            await self.store.delete(backend_record_key(previous))
            self.logger.info("Account switch, cleared previous user state", previous_user_id=previous, user_id=user_id)
        if previous != user_id:
            await self.store.set(LAST_USER_KEY, user_id)
        return switched
