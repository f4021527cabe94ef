"""Allow-list / deny-list policy store.

The effective allow-list is a compiled-in default set plus a user set;
the deny-list is a user set only. Allow and deny may overlap, and allow
always wins: a package on both lists is never killed.

User sets live in memory and are written through to storage on every
change. A failed write is reported but never rolled back, so in-memory
state is always the latest requested state.
"""

from __future__ import annotations

import threading
from typing import Protocol

import structlog

from droid_reaper.storage import StorageError

log = structlog.get_logger()

STORE_NAME = "policy"
USER_ALLOW_KEY = "user_allow"
USER_DENY_KEY = "user_deny"

# Never persisted, never removable
DEFAULT_ALLOW: frozenset[str] = frozenset(
    {
        "android",
        "system",
        "com.android.systemui",
        "com.android.phone",
    }
)


class PolicyPersistence(Protocol):
    """What the policy store needs from its storage collaborator."""

    def load(self, store: str) -> dict[str, set[str]]: ...

    def save(self, store: str, key: str, values: set[str]) -> bool: ...


class PolicyStore:
    """In-memory allow/deny sets backed by a persistence collaborator."""

    def __init__(
        self,
        persistence: PolicyPersistence,
        default_allow: frozenset[str] = DEFAULT_ALLOW,
    ):
        self._persistence = persistence
        self._default_allow = frozenset(default_allow)
        self._user_allow: set[str] = set()
        self._user_deny: set[str] = set()
        self._lock = threading.Lock()

    def load(self) -> None:
        """Read the user sets from storage. Unreadable storage means empty sets."""
        try:
            data = self._persistence.load(STORE_NAME)
        except StorageError as e:
            log.warning("policy_load_failed", error=str(e))
            data = {}

        with self._lock:
            self._user_allow = set(data.get(USER_ALLOW_KEY, set()))
            self._user_deny = set(data.get(USER_DENY_KEY, set()))

        log.info(
            "policy_loaded",
            user_allow=len(self._user_allow),
            user_deny=len(self._user_deny),
        )

    @property
    def default_allow(self) -> frozenset[str]:
        return self._default_allow

    @property
    def user_allow(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._user_allow)

    @property
    def user_deny(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._user_deny)

    def effective_allow(self) -> frozenset[str]:
        """Default and user allow sets combined (snapshot)."""
        with self._lock:
            return self._default_allow | self._user_allow

    def is_allowed(self, package: str | None) -> bool:
        package = _normalize(package)
        if not package:
            return False
        with self._lock:
            return package in self._default_allow or package in self._user_allow

    def is_denied(self, package: str | None) -> bool:
        package = _normalize(package)
        if not package:
            return False
        with self._lock:
            return package in self._user_deny

    def is_kill_eligible(self, package: str | None) -> bool:
        """True if the package is denied and not protected by the allow-list."""
        return self.is_denied(package) and not self.is_allowed(package)

    def add_allow(self, package: str) -> bool:
        """Add to the user allow-list. Returns whether the change was saved."""
        return self._mutate(USER_ALLOW_KEY, package, add=True)

    def remove_allow(self, package: str) -> bool:
        """Remove from the user allow-list. Default entries are unaffected."""
        return self._mutate(USER_ALLOW_KEY, package, add=False)

    def add_deny(self, package: str) -> bool:
        """Add to the deny-list. Returns whether the change was saved."""
        return self._mutate(USER_DENY_KEY, package, add=True)

    def remove_deny(self, package: str) -> bool:
        """Remove from the deny-list. Returns whether the change was saved."""
        return self._mutate(USER_DENY_KEY, package, add=False)

    def _mutate(self, key: str, package: str, *, add: bool) -> bool:
        """Apply one change and write the full set through to storage.

        The lock covers both the change and the write so concurrent callers
        cannot persist a stale copy of the set.
        """
        package = _normalize(package)
        if not package:
            log.warning("policy_rejected_blank", key=key)
            return False

        with self._lock:
            target = self._user_allow if key == USER_ALLOW_KEY else self._user_deny
            if add:
                target.add(package)
            else:
                target.discard(package)
            saved = self._persistence.save(STORE_NAME, key, set(target))

        if not saved:
            log.warning("policy_not_persisted", key=key, package=package, added=add)
        return saved


def _normalize(package: str | None) -> str:
    """Identifiers are compared and stored without surrounding whitespace."""
    return (package or "").strip()
