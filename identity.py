"""
Identity Store: who is using the console right now.

`login` does not authenticate anybody, it only replaces the held identity
with the record it is given. Callers that need real credentials must check
them before calling it.
"""

import logging
from typing import Callable, Iterable, List, Optional

from schemas import User
from store import Payload, validate_payload

log = logging.getLogger(__name__)

IdentityListener = Callable[[Optional[User]], None]


class IdentityStore:
    def __init__(self, user: Optional[User] = None):
        self._user = user
        self._listeners: List[IdentityListener] = []

    @property
    def current_user(self) -> Optional[User]:
        return self._user

    def login(self, user: Payload) -> User:
        self._user = validate_payload(User, user)
        log.info("Logged in %s as %s", self._user.id, self._user.role)
        self._broadcast()
        return self._user

    def logout(self):
        if self._user is not None:
            log.info("Logged out %s", self._user.id)
        self._user = None
        self._broadcast()

    def has_role(self, roles: Iterable[str]) -> bool:
        if self._user is None:
            return False
        return self._user.role in set(roles)

    def subscribe(self, listener: IdentityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _broadcast(self):
        for listener in list(self._listeners):
            listener(self._user)
