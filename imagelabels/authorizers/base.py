"""Base class for registry authorizers."""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from importlib.metadata import entry_points
from typing import Callable, Hashable

from imagelabels.config import AuthorizationType, RegistryConfiguration
from imagelabels.registry.http import SessionFactory
from imagelabels.registry.parser import ImageReference

logger = logging.getLogger(__name__)

#: Entry-point group under which third-party authorizers register.
ENTRY_POINT_GROUP = "imagelabels.authorizers"


class AuthorizerError(Exception):
    """Raised when an authorizer cannot run with the given configuration."""


class BaseAuthorizer(ABC):
    """Abstract base class for registry authorizers.

    Subclasses must define :attr:`type` and implement
    :meth:`get_authorization_headers`. Instances are created once and shared
    by all resolutions, so any state they keep must be thread-safe.

    Args:
        sessions: Session factory for authorizers that call token services.
        timeout: ``(connect, read)`` timeout for those calls.
    """

    #: Authorization type served by this authorizer.
    type: AuthorizationType

    def __init__(
        self,
        sessions: SessionFactory | None = None,
        timeout: float | tuple[float, float] = (5.0, 30.0),
    ) -> None:
        self.sessions = sessions or SessionFactory()
        self.timeout = timeout

    @abstractmethod
    def get_authorization_headers(
        self,
        image: ImageReference,
        config: RegistryConfiguration,
    ) -> dict[str, str] | None:
        """Return the headers that authorize pulling *image*.

        Args:
            image: The image being resolved.
            config: Configuration of the registry hosting *image*.

        Returns:
            Headers to send with registry requests, possibly empty, or
            ``None`` if authorization could not be obtained.

        Raises:
            Exception: Any failure talking to a token service propagates.
        """


@dataclass
class _Token:
    value: str
    expires_at: float | None


class TokenCache:
    """Thread-safe cache of short-lived tokens.

    Refreshes are single-flight: when concurrent callers find the same key
    expired, one of them fetches a new token and the others wait for it.

    Args:
        margin: Seconds before expiry at which a token is considered stale.
    """

    def __init__(self, margin: float = 10.0) -> None:
        self.margin = margin
        self._tokens: dict[Hashable, _Token] = {}
        self._locks: dict[Hashable, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(
        self,
        key: Hashable,
        fetch: Callable[[], tuple[str, float | None] | None],
    ) -> str | None:
        """Return the cached token for *key*, fetching it when missing or stale.

        Args:
            key: Cache key.
            fetch: Returns ``(token, expires_at)`` with ``expires_at`` as a
                :func:`time.monotonic` value (``None`` for no expiry), or
                ``None`` when no token could be obtained.
        """
        token = self._fresh(key)
        if token is not None:
            return token.value

        with self._lock_for(key):
            # Another caller may have refreshed while we waited.
            token = self._fresh(key)
            if token is not None:
                return token.value

            fetched = fetch()
            if fetched is None:
                return None
            value, expires_at = fetched
            self._tokens[key] = _Token(value, expires_at)
            return value

    def clear(self) -> None:
        with self._guard:
            self._tokens.clear()

    def _lock_for(self, key: Hashable) -> threading.Lock:
        with self._guard:
            self._prune(key)
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _prune(self, keep: Hashable) -> None:
        # Caller holds _guard. Entries whose lock is held are being refreshed.
        now = time.monotonic()
        for key, token in list(self._tokens.items()):
            if key == keep or token.expires_at is None or token.expires_at > now:
                continue
            lock = self._locks.get(key)
            if lock is not None and lock.locked():
                continue
            del self._tokens[key]
            self._locks.pop(key, None)

    def _fresh(self, key: Hashable) -> _Token | None:
        token = self._tokens.get(key)
        if token is None:
            return None
        if token.expires_at is not None and time.monotonic() >= token.expires_at - self.margin:
            return None
        return token


def _builtin_authorizers() -> dict[str, type[BaseAuthorizer]]:
    from imagelabels.authorizers.anonymous import AnonymousAuthorizer
    from imagelabels.authorizers.awsecr import AwsEcrAuthorizer
    from imagelabels.authorizers.basic import BasicAuthAuthorizer
    from imagelabels.authorizers.dockeroauth2 import DockerOAuth2Authorizer

    return {
        cls.type.value: cls
        for cls in (
            AnonymousAuthorizer,
            BasicAuthAuthorizer,
            DockerOAuth2Authorizer,
            AwsEcrAuthorizer,
        )
    }


def discover_authorizers() -> dict[str, type[BaseAuthorizer]]:
    """Return the built-in authorizers overlaid with entry-point registrations."""
    discovered = _builtin_authorizers()
    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            cls = ep.load()
        except Exception:
            logger.warning("Failed to load authorizer '%s'", ep.name, exc_info=True)
            continue
        discovered[ep.name] = cls
    return discovered


def create_authorizers(
    sessions: SessionFactory | None = None,
    timeout: float | tuple[float, float] = (5.0, 30.0),
) -> list[BaseAuthorizer]:
    """Instantiate every discovered authorizer with shared transport settings."""
    return [cls(sessions, timeout) for _, cls in sorted(discover_authorizers().items())]
