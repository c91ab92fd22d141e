"""
Per-session wiring of identity provider, local storage and cart service.
"""
import logging
import time
from collections import OrderedDict
from pathlib import Path
from typing import Callable, Dict, Optional

from storefront.cart_service import CartReconciliationService
from storefront.catalog import ProductCatalog
from storefront.config import Config
from storefront.exceptions import ValidationError
from storefront.identity import SessionIdentityProvider
from storefront.local_storage import JsonFileStorage, LocalStorage
from storefront.log import hash_identifier
from storefront.models import HydrationResult
from storefront.remote_store import RemoteStore

logger = logging.getLogger(__name__)

StorageFactory = Callable[[str], LocalStorage]


def file_storage_factory(base_dir: Optional[str] = None) -> StorageFactory:
    """Each session gets its own directory, named by the hashed session id"""
    root = Path(base_dir or Config.LOCAL_STORAGE_DIR)

    def factory(session_id: str) -> LocalStorage:
        return JsonFileStorage(root / hash_identifier(session_id))

    return factory


class CartSession:
    """One client session: its identity and its cart"""

    def __init__(self, session_id: str, identity: SessionIdentityProvider, cart: CartReconciliationService):
        self.session_id = session_id
        self.identity = identity
        self.cart = cart

    async def sign_in(self, user_id: str) -> Optional[HydrationResult]:
        await self.identity.sign_in(user_id)
        return self.cart.last_hydration

    async def sign_out(self) -> Optional[HydrationResult]:
        await self.identity.sign_out()
        return self.cart.last_hydration


class SessionRegistry:
    """
    Creates and keeps CartSessions, starting each cart exactly once.

    Sessions are kept in least-recently-used order. Each get_or_create
    evicts sessions idle for longer than idle_timeout, then the oldest
    ones beyond max_sessions. An evicted anonymous cart is still on disk
    and is restored when its session id comes back.
    """

    def __init__(
        self,
        remote_store: RemoteStore,
        catalog: ProductCatalog,
        storage_factory: Optional[StorageFactory] = None,
        idle_timeout: Optional[float] = None,
        max_sessions: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        **cart_options
    ):
        self.remote_store = remote_store
        self.catalog = catalog
        self.storage_factory = storage_factory or file_storage_factory()
        # 0 disables idle eviction
        self.idle_timeout = idle_timeout if idle_timeout is not None else Config.SESSION_IDLE_SECONDS
        self.max_sessions = max_sessions or Config.MAX_SESSIONS
        self.clock = clock
        self.cart_options = cart_options
        self._sessions: "OrderedDict[str, CartSession]" = OrderedDict()
        self._last_seen: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Optional[CartSession]:
        return self._sessions.get(session_id)

    async def get_or_create(self, session_id: str) -> CartSession:
        if not session_id or not session_id.strip():
            raise ValidationError("Session ID is required")
        session_id = session_id.strip()

        now = self.clock()
        self._evict_idle(now)

        session = self._sessions.get(session_id)
        if session is not None:
            self._touch(session_id, now)
            return session

        identity = SessionIdentityProvider()
        cart = CartReconciliationService(
            identity_provider=identity,
            remote_store=self.remote_store,
            catalog=self.catalog,
            local_storage=self.storage_factory(session_id),
            **self.cart_options
        )
        session = CartSession(session_id, identity, cart)
        self._sessions[session_id] = session
        self._touch(session_id, now)
        while len(self._sessions) > self.max_sessions:
            self._evict(next(iter(self._sessions)), "capacity")

        hydration = await cart.start()
        logger.info(
            "Session started",
            extra={"hashed_session_id": hash_identifier(session_id), "lines": hydration.line_count}
        )
        return session

    def _touch(self, session_id: str, now: float) -> None:
        self._last_seen[session_id] = now
        self._sessions.move_to_end(session_id)

    def _evict_idle(self, now: float) -> None:
        if self.idle_timeout <= 0:
            return
        while self._sessions:
            oldest = next(iter(self._sessions))
            if now - self._last_seen[oldest] < self.idle_timeout:
                break
            self._evict(oldest, "idle")

    def _evict(self, session_id: str, reason: str) -> None:
        self.close(session_id)
        logger.info(
            "Session evicted",
            extra={"hashed_session_id": hash_identifier(session_id), "reason": reason}
        )

    def close(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        self._last_seen.pop(session_id, None)
        if session is not None:
            session.cart.close()

    def close_all(self) -> None:
        for session_id in list(self._sessions):
            self.close(session_id)
