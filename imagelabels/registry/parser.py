"""Parse container image references into registry components."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

#: Registry used when an image reference does not name one.
DEFAULT_REGISTRY_HOST = "registry-1.docker.io"

#: Tag used when an image reference carries neither a tag nor a digest.
DEFAULT_TAG = "latest"

#: Namespace of the official images on the default registry.
DEFAULT_NAMESPACE = "library"

# Explicit hosts that are aliases of the default (Docker Hub) registry.
_DOCKER_HUB_ALIASES = {"docker.io", "index.docker.io"}

_LOCALHOST = "localhost"

_HOSTNAME_RE = re.compile(
    r"^(?:[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?\.)*"
    r"[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?$"
)
_PORT_RE = re.compile(r"^[0-9]{1,5}$")


class ReferenceType(str, Enum):
    """Which of tag or digest identifies the image instance."""

    TAG = "tag"
    DIGEST = "digest"


class ParseErrorKind(str, Enum):
    INVALID_HOST = "invalid_host"
    INVALID_PORT = "invalid_port"
    INVALID_NAME = "invalid_name"


class ParseError(ValueError):
    """Raised when an image reference cannot be parsed.

    Attributes:
        kind: The :class:`ParseErrorKind` describing what was rejected.
        reference: The raw reference string.
    """

    def __init__(self, kind: ParseErrorKind, message: str, reference: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.reference = reference


@dataclass(frozen=True)
class ImageReference:
    """Parsed reference to a container image.

    The reference has the structure::

        hostname[:port]/[namespace/]name(:tag|@digest)

    Attributes:
        hostname: Registry hostname (e.g. ``registry-1.docker.io``).
        port: Optional registry port.
        repository_namespace: Zero or more ``/``-joined path components.
        repository_name: Final path component.
        reference_type: Whether ``repository_tag`` or ``repository_digest`` is set.
        repository_tag: Tag, set iff ``reference_type`` is ``TAG``.
        repository_digest: Digest (``algorithm:hex``), set iff ``reference_type`` is ``DIGEST``.
    """

    hostname: str
    repository_name: str
    reference_type: ReferenceType
    port: str | None = None
    repository_namespace: str = ""
    repository_tag: str | None = None
    repository_digest: str | None = None

    @property
    def registry_host(self) -> str:
        """Return ``hostname[:port]``, the key used to look up registry configuration."""
        if self.port:
            return f"{self.hostname}:{self.port}"
        return self.hostname

    @property
    def repository(self) -> str:
        """Return ``[namespace/]name`` without tag or digest."""
        if self.repository_namespace:
            return f"{self.repository_namespace}/{self.repository_name}"
        return self.repository_name

    @property
    def reference(self) -> str:
        """Return the tag or the digest, whichever identifies this image."""
        if self.reference_type is ReferenceType.DIGEST:
            return self.repository_digest or ""
        return self.repository_tag or ""

    @property
    def canonical_name(self) -> str:
        """Return ``registry_host/repository`` followed by ``:tag`` or ``@digest``."""
        separator = "@" if self.reference_type is ReferenceType.DIGEST else ":"
        return f"{self.registry_host}/{self.repository}{separator}{self.reference}"

    def __str__(self) -> str:
        return self.canonical_name


class ImageReferenceParser:
    """Turn free-form image strings into :class:`ImageReference` values.

    The parser holds only its defaults and may be shared between threads.

    Args:
        default_registry_host: Registry host (with optional port) used when the
            image string does not name one.
        default_tag: Tag used when the image string has neither tag nor digest.
        official_repository_namespace: Namespace used for single-component
            repositories on the default registry.
    """

    def __init__(
        self,
        default_registry_host: str = DEFAULT_REGISTRY_HOST,
        default_tag: str = DEFAULT_TAG,
        official_repository_namespace: str = DEFAULT_NAMESPACE,
    ) -> None:
        self.default_registry_host = default_registry_host
        self.default_tag = default_tag
        self.official_repository_namespace = official_repository_namespace

    def parse(self, raw: str) -> ImageReference:
        """Parse *raw* into an :class:`ImageReference`.

        Supported formats:

        * ``nginx`` (default host, namespace and tag)
        * ``myorg/myimage:v1`` (default host)
        * ``registry.example.com:5000/org/team/image:v1``
        * ``localhost/image@sha256:abc...``

        Args:
            raw: The image reference string.

        Returns:
            The parsed :class:`ImageReference`.

        Raises:
            ParseError: If the host, port or name components are malformed.
        """
        if not raw or not raw.strip():
            raise ParseError(ParseErrorKind.INVALID_NAME, "Empty image reference", raw)

        registry_host, remainder = self._split_registry_host(raw)
        hostname, port = _split_host_and_port(registry_host, raw)

        components = remainder.split("/")
        tail = components[-1]
        namespace_components = components[:-1]
        if any(not c for c in namespace_components):
            raise ParseError(
                ParseErrorKind.INVALID_NAME,
                f"Empty path component in image reference: {raw}",
                raw,
            )

        if namespace_components:
            namespace = "/".join(namespace_components)
        elif registry_host == self.default_registry_host:
            namespace = self.official_repository_namespace
        else:
            namespace = ""

        name, tag, digest = self._split_reference(tail, raw)

        return ImageReference(
            hostname=hostname,
            port=port,
            repository_namespace=namespace,
            repository_name=name,
            reference_type=ReferenceType.DIGEST if digest else ReferenceType.TAG,
            repository_tag=tag,
            repository_digest=digest,
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _split_registry_host(self, raw: str) -> tuple[str, str]:
        """Return ``(registry_host, remainder)``.

        The first path component is a registry host only if it contains a
        ``.`` or a ``:``, or is ``localhost``. The same heuristic is used by
        the Docker reference implementation.
        """
        first, sep, rest = raw.partition("/")
        if sep and ("." in first or ":" in first or first == _LOCALHOST):
            registry_host, remainder = first, rest
        else:
            registry_host, remainder = self.default_registry_host, raw

        if registry_host in _DOCKER_HUB_ALIASES:
            registry_host = self.default_registry_host
        return registry_host, remainder

    def _split_reference(self, tail: str, raw: str) -> tuple[str, str | None, str | None]:
        """Split ``name(:tag|@digest)`` into ``(name, tag, digest)``."""
        tag: str | None = None
        digest: str | None = None

        if "@" in tail:
            name, _, digest = tail.partition("@")
            if not digest or "@" in digest:
                raise ParseError(
                    ParseErrorKind.INVALID_NAME, f"Invalid repository digest: {tail}", raw
                )
            # name:tag@digest pins by digest; the tag is informational only.
            name = name.partition(":")[0]
        elif ":" in tail:
            name, _, tag = tail.rpartition(":")
            if not tag:
                raise ParseError(
                    ParseErrorKind.INVALID_NAME, f"Invalid repository tag: {tail}", raw
                )
        else:
            name, tag = tail, self.default_tag

        if not name or ":" in name:
            raise ParseError(
                ParseErrorKind.INVALID_NAME, f"Invalid repository name: {tail}", raw
            )
        return name, tag, digest


def _split_host_and_port(registry_host: str, raw: str) -> tuple[str, str | None]:
    """Split and validate ``hostname[:port]``."""
    parts = registry_host.split(":")
    if len(parts) > 2:
        raise ParseError(
            ParseErrorKind.INVALID_HOST,
            f"Invalid registry host address: {registry_host}",
            raw,
        )

    hostname = parts[0]
    port = parts[1] if len(parts) == 2 else None

    if port is not None and (not _PORT_RE.fullmatch(port) or int(port) > 65535):
        raise ParseError(ParseErrorKind.INVALID_PORT, f"Invalid registry port: {port}", raw)
    if not _HOSTNAME_RE.fullmatch(hostname):
        raise ParseError(
            ParseErrorKind.INVALID_HOST, f"Invalid registry hostname: {hostname}", raw
        )
    return hostname, port


def parse_image_reference(raw: str, parser: ImageReferenceParser | None = None) -> ImageReference:
    """Parse *raw* with *parser*, or with Docker Hub defaults when omitted."""
    return (parser or ImageReferenceParser()).parse(raw)
