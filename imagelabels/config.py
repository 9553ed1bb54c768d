"""Settings and registry configurations.

Settings are read from a YAML file validated against
``imagelabels/schemas/settings.schema.json``. Registry configurations may also
be derived from a Docker ``config.json`` (or a Kubernetes ``.dockerconfigjson``
secret) and merged with the ones declared in the settings file.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from importlib import resources
from pathlib import Path
from typing import Any, Callable

import jsonschema
import yaml

from imagelabels.registry.parser import (
    DEFAULT_NAMESPACE,
    DEFAULT_REGISTRY_HOST,
    DEFAULT_TAG,
    ImageReferenceParser,
)

logger = logging.getLogger(__name__)

DOCKER_IMAGE_MANIFEST_MEDIA_TYPE = "application/vnd.docker.distribution.manifest.v2+json"
OCI_IMAGE_MANIFEST_MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+json"
SUPPORTED_MANIFEST_MEDIA_TYPES = (
    DOCKER_IMAGE_MANIFEST_MEDIA_TYPE,
    OCI_IMAGE_MANIFEST_MEDIA_TYPE,
)

#: ``extra`` key holding the bearer token endpoint of a ``dockeroauth2`` registry.
REGISTRY_AUTH_URI_KEY = "registryAuthUri"

# Server names ``docker login`` and ``kubectl create secret`` use for Docker Hub.
_DOCKER_HUB_SERVERS = {"docker.io", "https://index.docker.io/v1/"}


class ConfigurationError(Exception):
    """Raised when settings cannot be loaded or are inconsistent."""


class AuthorizationType(str, Enum):
    """Registry authorization schemes."""

    #: No credentials; requests are sent without an ``Authorization`` header.
    ANONYMOUS = "anonymous"
    #: HTTP Basic credentials (Artifactory/JFrog, Azure container registry).
    BASICAUTH = "basicauth"
    #: Bearer token from a token service (Docker Hub, Harbor, GitHub).
    DOCKEROAUTH2 = "dockeroauth2"
    #: Amazon ECR authorization token obtained through the AWS API.
    AWSECR = "awsecr"


@dataclass
class RegistryConfiguration:
    """Access settings for one container registry.

    Attributes:
        registry_host: Registry host and optional port. Used as the lookup key
            for images stored on this registry.
        authorization_type: Selects the authorizer used for this registry.
            ``None`` when not declared; the resolver treats it as anonymous.
        user: User name, access key or client id, depending on the type.
        secret: Password, secret key or token, depending on the type.
        manifest_media_type: Media type requested for image manifests.
        disable_ssl_verification: Skip TLS certificate verification.
        use_http_proxy: Send requests through the configured HTTP proxy.
        extra: Authorizer specific settings (e.g. ``region`` for ECR).
    """

    registry_host: str
    authorization_type: AuthorizationType | None = None
    user: str | None = None
    secret: str | None = field(default=None, repr=False)
    manifest_media_type: str = DOCKER_IMAGE_MANIFEST_MEDIA_TYPE
    disable_ssl_verification: bool = False
    use_http_proxy: bool = False
    extra: dict[str, str] = field(default_factory=dict)


@dataclass
class HttpProxy:
    host: str
    port: int

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass
class Settings:
    """Top-level settings.

    Attributes:
        default_registry_host: Registry used for image names without a host.
        default_repository_tag: Tag used for image names without tag or digest.
        official_repository_namespace: Namespace of single-component names on
            the default registry.
        connect_timeout: Seconds allowed for establishing a connection.
        read_timeout: Seconds allowed between bytes of a response.
        http_proxy: Proxy used by registries with ``use_http_proxy`` set.
        replace_default_docker_registry_server: Rewrite the Docker Hub server
            names found in Docker config files to ``registry-1.docker.io``.
        registry_configurations: Registry configurations keyed by registry host.
    """

    default_registry_host: str = DEFAULT_REGISTRY_HOST
    default_repository_tag: str = DEFAULT_TAG
    official_repository_namespace: str = DEFAULT_NAMESPACE
    connect_timeout: float = 5.0
    read_timeout: float = 30.0
    http_proxy: HttpProxy | None = None
    replace_default_docker_registry_server: bool = True
    registry_configurations: dict[str, RegistryConfiguration] = field(default_factory=dict)

    @property
    def timeout(self) -> tuple[float, float]:
        return (self.connect_timeout, self.read_timeout)

    def image_parser(self) -> ImageReferenceParser:
        return ImageReferenceParser(
            self.default_registry_host,
            self.default_repository_tag,
            self.official_repository_namespace,
        )


# ----------------------------------------------------------------------
# Loading
# ----------------------------------------------------------------------


def _load_schema() -> dict[str, Any]:
    """Load the settings JSON Schema from the ``imagelabels.schemas`` package."""
    schema_ref = resources.files("imagelabels.schemas").joinpath("settings.schema.json")
    return json.loads(schema_ref.read_text(encoding="utf-8"))  # type: ignore[no-any-return]


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings from a YAML file, or the built-in defaults.

    Args:
        path: Settings file. When omitted, ``imagelabels/defaults/settings.yaml``
            is used; it configures Docker Hub only.

    Returns:
        The validated :class:`Settings`.

    Raises:
        ConfigurationError: If the file cannot be read or is invalid.
    """
    if path is None:
        source = resources.files("imagelabels.defaults").joinpath("settings.yaml")
        name = "built-in settings"
    else:
        source = Path(path)
        name = str(path)

    try:
        data = yaml.safe_load(source.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Failed to read settings from {name}: {exc}") from exc

    logger.debug("Loaded settings from %s", name)
    return settings_from_dict(data or {})


def settings_from_dict(data: dict[str, Any]) -> Settings:
    """Validate *data* against the settings schema and build :class:`Settings`.

    Raises:
        ConfigurationError: If *data* does not conform to the schema or is
            inconsistent.
    """
    try:
        jsonschema.validate(instance=data, schema=_load_schema())
    except jsonschema.ValidationError as exc:
        raise ConfigurationError(f"Invalid settings: {exc.message}") from exc

    proxy_data = data.get("http_proxy")
    settings = Settings(
        default_registry_host=data.get("default_registry_host", DEFAULT_REGISTRY_HOST),
        default_repository_tag=data.get("default_repository_tag", DEFAULT_TAG),
        official_repository_namespace=data.get("official_repository_namespace", DEFAULT_NAMESPACE),
        connect_timeout=float(data.get("connect_timeout", 5.0)),
        read_timeout=float(data.get("read_timeout", 30.0)),
        http_proxy=HttpProxy(proxy_data["host"], int(proxy_data["port"])) if proxy_data else None,
        replace_default_docker_registry_server=data.get(
            "replace_default_docker_registry_server", True
        ),
    )

    for name, entry in (data.get("registry_configurations") or {}).items():
        conf = RegistryConfiguration(
            registry_host=entry["registry_host"],
            authorization_type=AuthorizationType(entry["authorization_type"])
            if "authorization_type" in entry
            else None,
            user=entry.get("user"),
            secret=entry.get("secret"),
            manifest_media_type=entry.get("manifest_media_type", DOCKER_IMAGE_MANIFEST_MEDIA_TYPE),
            disable_ssl_verification=entry.get("disable_ssl_verification", False),
            use_http_proxy=entry.get("use_http_proxy", False),
            extra={k: str(v) for k, v in (entry.get("extra") or {}).items()},
        )
        if conf.use_http_proxy and settings.http_proxy is None:
            raise ConfigurationError(
                f"Registry configuration '{name}' uses an HTTP proxy but none is configured"
            )
        if conf.manifest_media_type not in SUPPORTED_MANIFEST_MEDIA_TYPES:
            raise ConfigurationError(
                f"Registry configuration '{name}' has an unsupported manifest media type: "
                f"{conf.manifest_media_type}"
            )
        if conf.registry_host in settings.registry_configurations:
            raise ConfigurationError(f"Duplicate registry configuration for {conf.registry_host}")
        settings.registry_configurations[conf.registry_host] = conf

    logger.debug("Registry configurations: %s", list(settings.registry_configurations.values()))
    return settings


# ----------------------------------------------------------------------
# Docker config conversion
# ----------------------------------------------------------------------


def configurations_from_docker_config(
    auths: dict[str, tuple[str | None, str | None]],
    token_service_uri: Callable[[str], str | None],
    *,
    replace_default_docker_registry_server: bool = True,
) -> dict[str, RegistryConfiguration]:
    """Turn Docker config credentials into registry configurations.

    A registry that answers with a bearer challenge is configured as
    ``dockeroauth2`` with its token endpoint in ``extra``; otherwise it is
    ``basicauth`` when credentials are present and ``anonymous`` when not.

    Args:
        auths: ``server -> (username, password)``, as returned by
            :func:`imagelabels.registry.auth.load_docker_config_auths`.
        token_service_uri: Callable returning the token URI template for a
            registry host, or ``None``.
        replace_default_docker_registry_server: Rewrite ``docker.io`` and
            ``https://index.docker.io/v1/`` to ``registry-1.docker.io``.

    Returns:
        Registry configurations keyed by registry host.
    """
    configurations: dict[str, RegistryConfiguration] = {}
    for server, (user, secret) in auths.items():
        host = server
        if replace_default_docker_registry_server and server in _DOCKER_HUB_SERVERS:
            host = DEFAULT_REGISTRY_HOST

        conf = RegistryConfiguration(registry_host=host, user=user, secret=secret)
        token_uri = token_service_uri(host)
        if token_uri:
            conf.authorization_type = AuthorizationType.DOCKEROAUTH2
            conf.extra[REGISTRY_AUTH_URI_KEY] = token_uri
        elif user or secret:
            conf.authorization_type = AuthorizationType.BASICAUTH
        else:
            conf.authorization_type = AuthorizationType.ANONYMOUS

        logger.info("Registry configuration from Docker config: %s", conf)
        configurations[host] = conf
    return configurations


def merge_registry_configurations(
    from_docker_config: dict[str, RegistryConfiguration],
    from_settings: dict[str, RegistryConfiguration],
) -> dict[str, RegistryConfiguration]:
    """Merge Docker config based configurations with declared ones.

    Values set in the settings file take precedence, including an explicit
    ``anonymous`` authorization type; ``extra`` maps are
    merged, and the transport flags always come from the settings file.
    """
    merged = dict(from_docker_config)
    for host, declared in from_settings.items():
        secret_conf = merged.get(host)
        if secret_conf is None:
            merged[host] = declared
            continue
        merged[host] = replace(
            declared,
            user=declared.user or secret_conf.user,
            secret=declared.secret or secret_conf.secret,
            authorization_type=declared.authorization_type
            if declared.authorization_type is not None
            else secret_conf.authorization_type,
            extra={**secret_conf.extra, **declared.extra},
        )
    return merged


def apply_credentials(
    configurations: dict[str, RegistryConfiguration],
    resolve: Callable[[str], tuple[str | None, str | None]],
) -> dict[str, RegistryConfiguration]:
    """Return *configurations* with credentials from *resolve* applied where found."""
    result: dict[str, RegistryConfiguration] = {}
    for host, conf in configurations.items():
        user, secret = resolve(host)
        if user and secret:
            conf = replace(conf, user=user, secret=secret)
        result[host] = conf
    return result
