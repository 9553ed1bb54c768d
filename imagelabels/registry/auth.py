"""Credential resolution for container registries."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

# Names under which Docker Hub appears in credentials stores and on the CLI.
_DOCKER_HUB_NAMES = (
    "docker.io",
    "index.docker.io",
    "registry-1.docker.io",
    "https://index.docker.io/v1/",
)


def _aliases(registry: str) -> tuple[str, ...]:
    if registry in _DOCKER_HUB_NAMES:
        return _DOCKER_HUB_NAMES
    return (registry,)


def _env_domain(registry: str) -> str:
    return registry.upper().replace(".", "_").replace(":", "_").replace("-", "_")


def resolve_credentials(
    registry: str,
    cli_auths: list[str] | None = None,
) -> tuple[str | None, str | None]:
    """Resolve credentials for a given registry host.

    Order of precedence:
    1. CLI-provided auth overrides (--auth flag)
    2. Domain-specific env vars (e.g., IMAGELABELS_AUTH_REGISTRY_EXAMPLE_COM_USERNAME)
    3. Global env vars (IMAGELABELS_USERNAME / IMAGELABELS_PASSWORD)

    Args:
        registry: The registry host to authenticate against.
        cli_auths: A list of string overrides in the form 'registry=user:pass'.

    Returns:
        A tuple of (username, password) if found, otherwise (None, None).
    """
    names = _aliases(registry)

    # 1. Check CLI overrides
    if cli_auths:
        for auth_override in cli_auths:
            if "=" in auth_override:
                domain, creds = auth_override.split("=", 1)
                if domain in names and ":" in creds:
                    user, pwd = creds.split(":", 1)
                    logger.debug("Using CLI override credentials for %s", registry)
                    return user, pwd

    # 2. Check domain-specific environment variables
    for name in names:
        env_domain = _env_domain(name)
        domain_user = os.environ.get(f"IMAGELABELS_AUTH_{env_domain}_USERNAME")
        domain_pass = os.environ.get(f"IMAGELABELS_AUTH_{env_domain}_PASSWORD")
        if domain_user and domain_pass:
            logger.debug("Using domain-specific env vars for %s", registry)
            return domain_user, domain_pass

    # 3. Check global environment variables
    global_user = os.environ.get("IMAGELABELS_USERNAME")
    global_pass = os.environ.get("IMAGELABELS_PASSWORD")
    if global_user and global_pass:
        logger.debug("Using global env vars for %s", registry)
        return global_user, global_pass

    return None, None


def default_docker_config_path() -> Path:
    return Path.home() / ".docker" / "config.json"


def load_docker_config_auths(
    path: Path | str | None = None,
) -> dict[str, tuple[str | None, str | None]]:
    """Read the ``auths`` section of a Docker ``config.json`` file.

    Accepts both the ``~/.docker/config.json`` layout and the
    ``.dockerconfigjson`` content of a Kubernetes pull secret. Credentials are
    taken from ``username``/``password`` when present, else decoded from the
    base64 ``auth`` field.

    Args:
        path: File to read. Defaults to ``~/.docker/config.json``.

    Returns:
        Mapping of registry server (as written in the file) to
        ``(username, password)``. Empty if the file is missing or unreadable.
    """
    config_path = Path(path) if path else default_docker_config_path()
    if not config_path.exists():
        logger.debug("No Docker config found at %s", config_path)
        return {}

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Failed to read Docker config %s: %s", config_path, e)
        return {}

    return parse_docker_config_auths(config)


def parse_docker_config_auths(config: dict) -> dict[str, tuple[str | None, str | None]]:
    """Extract ``server -> (username, password)`` from a parsed Docker config."""
    auths = config.get("auths") or {}
    result: dict[str, tuple[str | None, str | None]] = {}
    for server, entry in auths.items():
        if not isinstance(entry, dict):
            continue
        user = entry.get("username")
        pwd = entry.get("password")
        if not (user and pwd) and entry.get("auth"):
            try:
                auth_str = base64.b64decode(entry["auth"]).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as e:
                logger.warning("Failed to decode auth for %s: %s", server, e)
                auth_str = ""
            if ":" in auth_str:
                user, pwd = auth_str.split(":", 1)
        result[server] = (user, pwd)
    return result
