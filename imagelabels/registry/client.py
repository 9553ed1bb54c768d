"""HTTP client for the Docker Registry V2 API."""

from __future__ import annotations

import logging
import re
from typing import Any

import requests

logger = logging.getLogger(__name__)

# Docker Hub authentication endpoint.
DOCKER_AUTH_URL = "https://auth.docker.io/token"
DOCKER_AUTH_SERVICE = "registry.docker.io"

_CHALLENGE_PARAM_RE = re.compile(r'(\w+)\s*=\s*(?:"([^"]*)"|([^,\s]*))')


class RegistryError(Exception):
    """Raised when a registry API call fails.

    Attributes:
        status_code: HTTP status returned by the registry, or ``None`` when the
            request did not complete (connection error, timeout).
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RegistryResponseError(RegistryError):
    """Raised when a registry answers with a body that is not a JSON object."""


class RegistryClient:
    """Client for a single Docker Registry V2 API host.

    Authorization is not negotiated here: the caller supplies the headers
    produced by a registry authorizer.

    Args:
        registry_host: Registry host with optional port (e.g. ``localhost:5000``).
        session: Session used for the requests.
        headers: Headers sent with every request (usually ``Authorization``).
        timeout: ``(connect, read)`` timeout in seconds.
    """

    def __init__(
        self,
        registry_host: str,
        *,
        session: requests.Session | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | tuple[float, float] = (5.0, 30.0),
    ) -> None:
        self.registry_host = registry_host
        self.headers = dict(headers or {})
        self.timeout = timeout
        self._session = session or requests.Session()
        self._base_url = f"https://{registry_host}/v2"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_manifest(self, repository: str, reference: str, *, media_type: str) -> dict[str, Any]:
        """Fetch the manifest of *repository* for a tag or digest.

        Args:
            repository: Full repository path (e.g. ``library/nginx``).
            reference: Tag or ``algorithm:hex`` digest.
            media_type: Manifest media type sent in the ``Accept`` header.

        Returns:
            Parsed manifest JSON.

        Raises:
            RegistryError: If the API call fails.
        """
        return self._get(f"/{repository}/manifests/{reference}", accept=media_type)

    def get_blob(self, repository: str, digest: str) -> dict[str, Any]:
        """Fetch a blob (typically an image config) by digest.

        Args:
            repository: Full repository path.
            digest: The blob digest (e.g. ``sha256:abc123...``).

        Returns:
            Parsed blob JSON.
        """
        return self._get(f"/{repository}/blobs/{digest}")

    def list_tags(self, repository: str) -> list[str]:
        """Return all tags of *repository*, sorted."""
        data = self._get(f"/{repository}/tags/list", accept="application/json")
        tags: list[str] = data.get("tags") or []
        return sorted(tags)

    def list_repositories(self) -> list[str]:
        """Return the repositories listed by the registry catalog (``/v2/_catalog``)."""
        data = self._get("/_catalog", accept="application/json")
        repositories: list[str] = data.get("repositories") or []
        return repositories

    def token_service_uri(self) -> str | None:
        """Discover the bearer token endpoint from the registry's challenge.

        Hits ``/v2/`` without credentials. A ``401`` answer carrying a
        ``WWW-Authenticate: Bearer realm=...,service=...`` header yields a
        token URI template with a ``{repository}`` placeholder.

        Returns:
            The token URI template, or ``None`` when the registry does not
            issue a usable bearer challenge.

        Raises:
            RegistryError: If the registry cannot be reached.
        """
        url = self._base_url + "/"
        logger.debug("GET %s (token service discovery)", url)
        try:
            resp = self._session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise RegistryError(f"Request to {url} failed: {exc}") from exc

        if resp.status_code != 401:
            return None

        www_auth = resp.headers.get("WWW-Authenticate", "")
        if not www_auth.lower().startswith("bearer"):
            return None
        params = parse_www_authenticate(www_auth)
        if "realm" not in params or "service" not in params:
            logger.warning(
                "Invalid WWW-Authenticate %r for container registry %s",
                www_auth,
                self.registry_host,
            )
            return None

        return f"{params['realm']}?service={params['service']}&scope=repository:{{repository}}:pull"

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _get(self, path: str, *, accept: str | None = None) -> dict[str, Any]:
        """Make a GET request to the registry and decode the JSON object body."""
        url = self._base_url + path
        headers = dict(self.headers)
        if accept:
            headers["Accept"] = accept

        logger.debug("GET %s", url)
        try:
            resp = self._session.get(url, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise RegistryError(f"Request to {url} failed: {exc}") from exc

        if resp.status_code != 200:
            raise RegistryError(
                f"Registry returned {resp.status_code} for {url}: {resp.text[:200]}",
                status_code=resp.status_code,
            )

        # Registries label JSON bodies as octet-stream or text/plain; decode regardless.
        try:
            data = resp.json()
        except ValueError as exc:
            raise RegistryResponseError(
                f"Registry returned a non-JSON body for {url}", status_code=resp.status_code
            ) from exc
        if not isinstance(data, dict):
            raise RegistryResponseError(
                f"Registry returned a non-object JSON body for {url}",
                status_code=resp.status_code,
            )
        return data


def parse_www_authenticate(header: str) -> dict[str, str]:
    """Parse a ``Bearer realm=...,service=...,scope=...`` header into a dict."""
    # Strip the "Bearer " prefix.
    if header.lower().startswith("bearer "):
        header = header[7:]

    params: dict[str, str] = {}
    for match in _CHALLENGE_PARAM_RE.finditer(header):
        key, quoted, bare = match.groups()
        params[key] = quoted if quoted is not None else bare
    return params
