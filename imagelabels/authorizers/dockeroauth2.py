"""Docker OAuth2 authorizer — bearer tokens from a registry token service."""

from __future__ import annotations

import logging
import time

import requests

from imagelabels.authorizers.base import BaseAuthorizer, TokenCache
from imagelabels.config import REGISTRY_AUTH_URI_KEY, AuthorizationType, RegistryConfiguration
from imagelabels.registry.client import DOCKER_AUTH_SERVICE, DOCKER_AUTH_URL, RegistryClient
from imagelabels.registry.parser import DEFAULT_REGISTRY_HOST, ImageReference

logger = logging.getLogger(__name__)

#: Token endpoint template of Docker Hub.
DEFAULT_DOCKER_REGISTRY_AUTH_URI = (
    f"{DOCKER_AUTH_URL}?service={DOCKER_AUTH_SERVICE}&scope=repository:{{repository}}:pull"
)

# Token lifetime assumed when the token service omits ``expires_in``.
_DEFAULT_EXPIRES_IN = 60


class DockerOAuth2Authorizer(BaseAuthorizer):
    """Obtain a pull token from the registry's token service.

    The token endpoint is taken from ``extra['registryAuthUri']`` when set,
    otherwise discovered from the ``WWW-Authenticate`` challenge the registry
    returns on ``/v2/``. Docker Hub falls back to its well-known endpoint.
    Tokens are cached per endpoint and repository until they expire.
    """

    type = AuthorizationType.DOCKEROAUTH2

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._tokens = TokenCache()
        self._token_uris = TokenCache()

    def get_authorization_headers(
        self,
        image: ImageReference,
        config: RegistryConfiguration,
    ) -> dict[str, str] | None:
        session = self.sessions.get_session(
            verify_ssl=not config.disable_ssl_verification,
            use_http_proxy=config.use_http_proxy,
            extra=config.extra,
        )

        uri_template = self._token_uri_template(config, session)
        if uri_template is None:
            # No bearer challenge: the registry serves pulls without a token.
            logger.info("Registry %s issued no bearer challenge", config.registry_host)
            return {}

        token_uri = uri_template.replace("{repository}", image.repository)
        token = self._tokens.get(
            (token_uri, config.user),
            lambda: self._fetch_token(session, token_uri, config),
        )
        if token is None:
            return None
        return {"Authorization": f"Bearer {token}"}

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _token_uri_template(
        self,
        config: RegistryConfiguration,
        session: requests.Session,
    ) -> str | None:
        configured = config.extra.get(REGISTRY_AUTH_URI_KEY)
        if configured:
            return configured
        if config.registry_host == DEFAULT_REGISTRY_HOST:
            return DEFAULT_DOCKER_REGISTRY_AUTH_URI

        def discover() -> tuple[str, float | None] | None:
            client = RegistryClient(config.registry_host, session=session, timeout=self.timeout)
            uri = client.token_service_uri()
            logger.debug("Token service for %s: %s", config.registry_host, uri)
            return (uri, None) if uri else None

        return self._token_uris.get(config.registry_host, discover)

    def _fetch_token(
        self,
        session: requests.Session,
        token_uri: str,
        config: RegistryConfiguration,
    ) -> tuple[str, float | None] | None:
        auth = None
        if config.user and config.secret:
            auth = (config.user, config.secret)

        logger.debug("GET %s (token)", token_uri)
        resp = session.get(token_uri, auth=auth, timeout=self.timeout)
        if resp.status_code in (401, 403):
            logger.warning(
                "Token service rejected credentials for %s (%d)",
                config.registry_host,
                resp.status_code,
            )
            return None
        resp.raise_for_status()

        body = resp.json()
        token = body.get("token") or body.get("access_token")
        if not token:
            logger.warning("Token service for %s returned no token", config.registry_host)
            return None

        expires_in = body.get("expires_in") or _DEFAULT_EXPIRES_IN
        return token, time.monotonic() + float(expires_in)
