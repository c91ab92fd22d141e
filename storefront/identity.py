"""
Identity provider: who the current user is, and notifications when that changes.
"""
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional

from storefront.exceptions import ValidationError
from storefront.log import hash_identifier
from storefront.models import Identity

logger = logging.getLogger(__name__)

IdentityListener = Callable[[Identity], Awaitable[None]]


class IdentityProvider(ABC):

    @abstractmethod
    async def get_current_identity(self) -> Identity:
        pass

    @abstractmethod
    def on_identity_change(self, callback: IdentityListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        pass


class SessionIdentityProvider(IdentityProvider):
    """In-process identity for one session, driven by sign_in/sign_out"""

    def __init__(self, identity: Optional[Identity] = None):
        self._identity = identity or Identity.anonymous()
        self._listeners: List[IdentityListener] = []

    async def get_current_identity(self) -> Identity:
        return self._identity

    def on_identity_change(self, callback: IdentityListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def sign_in(self, user_id: str) -> Identity:
        if not user_id or not user_id.strip():
            raise ValidationError("User ID is required")
        return await self._set(Identity.authenticated(user_id.strip()))

    async def sign_out(self) -> Identity:
        return await self._set(Identity.anonymous())

    async def _set(self, identity: Identity) -> Identity:
        self._identity = identity
        logger.info(
            "Identity changed",
            extra={
                "authenticated": identity.is_authenticated,
                "hashed_user_id": hash_identifier(identity.user_id)
            }
        )
        for listener in list(self._listeners):
            await listener(identity)
        return identity
