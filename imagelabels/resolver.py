"""Resolve container image labels through the Docker Registry V2 API.

Resolution is a fixed sequence: parse the image reference, find the registry
configuration for its host, obtain authorization headers, fetch the image
manifest, then fetch the config blob the manifest points at and return its
``config.Labels``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Iterable, Mapping

from imagelabels.authorizers.base import BaseAuthorizer, create_authorizers
from imagelabels.config import (
    AuthorizationType,
    RegistryConfiguration,
    Settings,
    apply_credentials,
    configurations_from_docker_config,
    merge_registry_configurations,
)
from imagelabels.registry.auth import resolve_credentials
from imagelabels.registry.client import RegistryClient, RegistryError, RegistryResponseError
from imagelabels.registry.http import SessionFactory
from imagelabels.registry.parser import (
    ImageReference,
    ImageReferenceParser,
    ParseError,
    ReferenceType,
)

logger = logging.getLogger(__name__)


class ResolutionErrorKind(str, Enum):
    """Why a resolution failed."""

    #: Malformed image reference; the caller must fix the input.
    INVALID_REFERENCE = "invalid_reference"
    #: No registry configuration for the image's registry host.
    UNKNOWN_REGISTRY = "unknown_registry"
    #: No authorizer for the configured authorization type.
    NO_AUTHORIZER = "no_authorizer"
    #: Credentials rejected or the authorizer declined.
    AUTHORIZATION_FAILED = "authorization_failed"
    #: The registry returned a document of unexpected shape.
    MALFORMED_MANIFEST = "malformed_manifest"
    #: Network, timeout or HTTP-layer failure.
    TRANSPORT = "transport"


class ResolutionError(Exception):
    """Raised when image labels cannot be resolved.

    Attributes:
        kind: The :class:`ResolutionErrorKind` of the failure.
        cause: The underlying exception, if any.
    """

    def __init__(
        self,
        kind: ResolutionErrorKind,
        message: str,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.cause = cause

    @property
    def retryable(self) -> bool:
        """Only transport failures may succeed when retried."""
        return self.kind is ResolutionErrorKind.TRANSPORT

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.args[0]}"


@dataclass(frozen=True)
class RegistryRequest:
    """An authorized request context for one image."""

    image: ImageReference
    config: RegistryConfiguration
    headers: dict[str, str]
    client: RegistryClient


class MetadataResolver:
    """Fetch image labels from the registry hosting each image.

    The resolver keeps no per-call state and may be shared between threads;
    the session factory it uses pools connections per transport setting.

    Args:
        parser: Parser holding the default host, tag and namespace.
        registry_configurations: Registry configurations keyed by registry host.
        authorizers: One authorizer per supported authorization type.
        sessions: Session factory for registry requests.
        timeout: ``(connect, read)`` timeout for each registry request.
    """

    def __init__(
        self,
        parser: ImageReferenceParser,
        registry_configurations: Mapping[str, RegistryConfiguration],
        authorizers: Iterable[BaseAuthorizer],
        *,
        sessions: SessionFactory | None = None,
        timeout: float | tuple[float, float] = (5.0, 30.0),
    ) -> None:
        self.parser = parser
        self.registry_configurations = {
            host: conf
            if conf.authorization_type is not None
            else replace(conf, authorization_type=AuthorizationType.ANONYMOUS)
            for host, conf in registry_configurations.items()
        }
        self.authorizers: dict[AuthorizationType, BaseAuthorizer] = {
            authorizer.type: authorizer for authorizer in authorizers
        }
        self.sessions = sessions or SessionFactory()
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve_labels(self, raw: str) -> dict[str, str]:
        """Return the labels of the image named by *raw*.

        Args:
            raw: Image reference (e.g. ``springsource/app:1.0``).

        Returns:
            The ``config.Labels`` mapping of the image config blob; empty when
            the image carries no labels.

        Raises:
            ResolutionError: If any step of the resolution fails.
        """
        request = self.registry_request(raw)
        image = request.image

        manifest = self._call(
            lambda: request.client.get_manifest(
                image.repository,
                image.reference,
                media_type=request.config.manifest_media_type,
            ),
            f"manifest of {image}",
        )
        config_digest = _config_digest(manifest, image)

        blob = self._call(
            lambda: request.client.get_blob(image.repository, config_digest),
            f"config blob {config_digest} of {image}",
        )
        labels = _labels(blob)
        logger.info("Resolved %d labels for %s", len(labels), image)
        return labels

    def get_tags(self, raw: str) -> list[str]:
        """Return the tags of the repository of the image named by *raw*.

        Raises:
            ResolutionError: If any step fails.
        """
        request = self.registry_request(raw)
        return self._call(
            lambda: request.client.list_tags(request.image.repository),
            f"tags of {request.image.repository}",
        )

    def get_repositories(self, registry_host: str) -> list[str]:
        """Return the repositories listed by the catalog of *registry_host*.

        Args:
            registry_host: A configured registry host, with port if any.

        Raises:
            ResolutionError: If any step fails.
        """
        request = self._authorized_request(_catalog_image(registry_host, self.parser.default_tag))
        return self._call(
            request.client.list_repositories,
            f"repositories of {registry_host}",
        )

    def registry_request(self, raw: str) -> RegistryRequest:
        """Parse *raw*, select its registry configuration and authorize.

        Raises:
            ResolutionError: On invalid references, missing configuration or
                authorizer, and authorization failures.
        """
        try:
            image = self.parser.parse(raw)
        except ParseError as exc:
            raise ResolutionError(
                ResolutionErrorKind.INVALID_REFERENCE,
                f"Invalid image reference '{raw}': {exc}",
                exc,
            ) from exc
        return self._authorized_request(image)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _authorized_request(self, image: ImageReference) -> RegistryRequest:
        config = self.registry_configurations.get(image.registry_host)
        if config is None:
            raise ResolutionError(
                ResolutionErrorKind.UNKNOWN_REGISTRY,
                f"Could not find a registry configuration for: {image.registry_host}",
            )

        authorizer = self.authorizers.get(config.authorization_type)
        if authorizer is None:
            raise ResolutionError(
                ResolutionErrorKind.NO_AUTHORIZER,
                f"Could not find an authorizer of type: {config.authorization_type.value}",
            )

        try:
            headers = authorizer.get_authorization_headers(image, config)
        except Exception as exc:
            raise ResolutionError(
                ResolutionErrorKind.TRANSPORT,
                f"Authorizer '{config.authorization_type.value}' failed for {image}: {exc}",
                exc,
            ) from exc
        if headers is None:
            raise ResolutionError(
                ResolutionErrorKind.AUTHORIZATION_FAILED,
                f"Could not obtain authorization headers for: {image}, config: {config}",
            )

        try:
            session = self.sessions.get_session(
                verify_ssl=not config.disable_ssl_verification,
                use_http_proxy=config.use_http_proxy,
                extra=config.extra,
            )
        except ValueError as exc:
            raise ResolutionError(ResolutionErrorKind.TRANSPORT, str(exc), exc) from exc

        client = RegistryClient(
            image.registry_host,
            session=session,
            headers=headers,
            timeout=self.timeout,
        )
        return RegistryRequest(image=image, config=config, headers=headers, client=client)

    @staticmethod
    def _call(fetch, what: str) -> Any:
        """Run a registry call, translating its failures into :class:`ResolutionError`."""
        try:
            return fetch()
        except RegistryResponseError as exc:
            raise ResolutionError(
                ResolutionErrorKind.MALFORMED_MANIFEST,
                f"Unexpected response for {what}: {exc}",
                exc,
            ) from exc
        except RegistryError as exc:
            kind = (
                ResolutionErrorKind.AUTHORIZATION_FAILED
                if exc.status_code in (401, 403)
                else ResolutionErrorKind.TRANSPORT
            )
            raise ResolutionError(kind, f"Failed to fetch {what}: {exc}", exc) from exc


def _config_digest(manifest: dict[str, Any], image: ImageReference) -> str:
    config = manifest.get("config")
    if not isinstance(config, dict):
        raise ResolutionError(
            ResolutionErrorKind.MALFORMED_MANIFEST,
            f"Image [{image}] has incorrect or missing manifest config element: {manifest}",
        )
    digest = config.get("digest")
    if not isinstance(digest, str) or not digest:
        raise ResolutionError(
            ResolutionErrorKind.MALFORMED_MANIFEST,
            f"Missing or invalid configuration digest [{digest}] for image [{image}]",
        )
    return digest


def _labels(blob: dict[str, Any]) -> dict[str, str]:
    # Image configs legitimately omit labels or carry ``"Labels": null``.
    config = blob.get("config")
    if not isinstance(config, dict):
        return {}
    labels = config.get("Labels")
    if not isinstance(labels, dict):
        return {}
    return dict(labels)


def _catalog_image(registry_host: str, default_tag: str) -> ImageReference:
    # Authorizers see the registry itself as the repository for catalog calls.
    hostname, _, port = registry_host.partition(":")
    return ImageReference(
        hostname=hostname,
        port=port or None,
        repository_name=registry_host,
        reference_type=ReferenceType.TAG,
        repository_tag=default_tag,
    )


def create_resolver(
    settings: Settings,
    docker_config_auths: dict[str, tuple[str | None, str | None]] | None = None,
    cli_auths: list[str] | None = None,
) -> MetadataResolver:
    """Build a :class:`MetadataResolver` from settings.

    Args:
        settings: Loaded settings.
        docker_config_auths: Credentials read from a Docker config file; each
            entry becomes a registry configuration, merged with the declared ones.
        cli_auths: ``host=user:pass`` credential overrides.

    Returns:
        A resolver with every discovered authorizer installed.
    """
    sessions = SessionFactory(settings.http_proxy.url if settings.http_proxy else None)
    configurations = dict(settings.registry_configurations)

    if docker_config_auths:

        def token_service_uri(host: str) -> str | None:
            # Discovery only queries the registry challenge, so certificates are not verified.
            session = sessions.get_session(verify_ssl=False)
            try:
                return RegistryClient(host, session=session, timeout=settings.timeout).token_service_uri()
            except RegistryError as exc:
                logger.warning("Token service discovery failed for %s: %s", host, exc)
                return None

        from_docker_config = configurations_from_docker_config(
            docker_config_auths,
            token_service_uri,
            replace_default_docker_registry_server=settings.replace_default_docker_registry_server,
        )
        configurations = merge_registry_configurations(from_docker_config, configurations)

    configurations = apply_credentials(
        configurations, lambda host: resolve_credentials(host, cli_auths)
    )

    return MetadataResolver(
        settings.image_parser(),
        configurations,
        create_authorizers(sessions, settings.timeout),
        sessions=sessions,
        timeout=settings.timeout,
    )
