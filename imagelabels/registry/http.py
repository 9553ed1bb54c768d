"""Pooled HTTP sessions for registry access."""

from __future__ import annotations

import logging
import threading
from typing import Any
from urllib.parse import urlparse

import requests

logger = logging.getLogger(__name__)

#: Query parameter present in Amazon S3 pre-signed URLs.
_AMZ_CREDENTIAL = "X-Amz-Credential"

#: Registry host suffix of the Azure container registry.
_AZURECR_SUFFIX = "azurecr.io"

#: ``extra`` key naming a host fragment whose redirects must not carry credentials.
CUSTOM_REGISTRY_KEY = "custom-registry"

_SAFE_METHODS = {"GET", "HEAD"}


class RegistrySession(requests.Session):
    """Session that drops the ``Authorization`` header on selected redirects.

    Registries often redirect blob downloads to an object store that uses its
    own authentication. Amazon S3 rejects requests carrying both a pre-signed
    URL and an ``Authorization`` header; Azure storage rejects the registry's
    Basic credentials.

    Args:
        custom_registry: Optional host fragment; redirects away from matching
            hosts drop the ``Authorization`` header.
    """

    def __init__(self, custom_registry: str | None = None) -> None:
        super().__init__()
        self.custom_registry = custom_registry

    def rebuild_auth(
        self,
        prepared_request: requests.PreparedRequest,
        response: requests.Response,
    ) -> None:
        super().rebuild_auth(prepared_request, response)

        if (prepared_request.method or "").upper() not in _SAFE_METHODS:
            return
        authorization = prepared_request.headers.get("Authorization")
        if not authorization:
            return

        target = urlparse(prepared_request.url or "")
        origin = urlparse(response.request.url or "")
        origin_host = origin.hostname or ""

        if _AMZ_CREDENTIAL in (target.query or ""):
            logger.debug("Dropping Authorization header on redirect to pre-signed URL")
            del prepared_request.headers["Authorization"]
        elif origin_host.endswith(_AZURECR_SUFFIX) and authorization.startswith("Basic"):
            logger.debug("Dropping Basic Authorization header on Azure redirect")
            del prepared_request.headers["Authorization"]
        elif self.custom_registry and self.custom_registry in origin_host:
            logger.debug("Dropping Authorization header on redirect from %s", origin_host)
            del prepared_request.headers["Authorization"]


class SessionFactory:
    """Hand out shared :class:`RegistrySession` objects.

    Sessions are cached per ``(verify_ssl, use_http_proxy, custom_registry)``
    combination so that connection pools are reused across registries that
    share the same transport settings. The factory is safe to use from
    multiple threads.

    Args:
        http_proxy: Proxy URL (e.g. ``http://proxy.local:8080``) used by
            registries that opt into it.
    """

    def __init__(self, http_proxy: str | None = None) -> None:
        self.http_proxy = http_proxy
        self._sessions: dict[tuple[Any, ...], RegistrySession] = {}
        self._lock = threading.Lock()

    def get_session(
        self,
        *,
        verify_ssl: bool = True,
        use_http_proxy: bool = False,
        extra: dict[str, str] | None = None,
    ) -> RegistrySession:
        """Return the session for the given transport settings.

        Raises:
            ValueError: If *use_http_proxy* is set but no proxy is configured.
        """
        if use_http_proxy and not self.http_proxy:
            raise ValueError("Registry configuration uses an HTTP proxy but none is configured")

        custom_registry = (extra or {}).get(CUSTOM_REGISTRY_KEY)
        key = (verify_ssl, use_http_proxy, custom_registry)
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                session = self._create_session(verify_ssl, use_http_proxy, custom_registry)
                self._sessions[key] = session
            return session

    def close(self) -> None:
        with self._lock:
            for session in self._sessions.values():
                session.close()
            self._sessions.clear()

    def _create_session(
        self,
        verify_ssl: bool,
        use_http_proxy: bool,
        custom_registry: str | None,
    ) -> RegistrySession:
        logger.debug(
            "Creating registry session: verify_ssl=%s use_http_proxy=%s",
            verify_ssl,
            use_http_proxy,
        )
        session = RegistrySession(custom_registry)
        session.verify = verify_ssl
        if use_http_proxy and self.http_proxy:
            session.proxies = {"http": self.http_proxy, "https": self.http_proxy}
        return session
