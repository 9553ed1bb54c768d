"""CLI entry point for imagelabels."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any

import click

from imagelabels.authorizers.base import discover_authorizers
from imagelabels.config import ConfigurationError, Settings, load_settings
from imagelabels.registry.auth import load_docker_config_auths
from imagelabels.registry.parser import ParseError
from imagelabels.resolver import MetadataResolver, ResolutionError, create_resolver

logger = logging.getLogger(__name__)


def _dump(data: Any, pretty: bool) -> str:
    if pretty:
        return json.dumps(data, indent=2, sort_keys=True)
    return json.dumps(data, sort_keys=True)


def _build_resolver(
    settings: Settings,
    docker_config: str | None,
    auth: tuple[str, ...],
) -> MetadataResolver:
    docker_config_auths = load_docker_config_auths(docker_config) if docker_config else None
    return create_resolver(
        settings,
        docker_config_auths=docker_config_auths,
        cli_auths=list(auth),
    )


_docker_config_option = click.option(
    "--docker-config",
    "docker_config",
    type=click.Path(exists=True, dir_okay=False),
    help="Docker config.json (or .dockerconfigjson) to read registry credentials from.",
)
_auth_option = click.option(
    "--auth",
    "auth",
    multiple=True,
    help="Credentials in registry.domain=user:pass format. Can be repeated.",
)


@click.group()
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    default=False,
    help="Enable verbose (DEBUG) logging.",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    envvar="IMAGELABELS_CONFIG",
    help="Settings YAML file. Default: built-in settings (Docker Hub only).",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_path: str | None) -> None:
    """imagelabels — read container image labels from registries."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        ctx.obj = load_settings(config_path)
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command()
@click.argument("image")
@_docker_config_option
@_auth_option
@click.option(
    "--pretty/--no-pretty",
    default=True,
    help="Pretty-print the JSON output (default: on).",
)
@click.pass_obj
def labels(
    settings: Settings,
    image: str,
    docker_config: str | None,
    auth: tuple[str, ...],
    pretty: bool,
) -> None:
    """Print the labels of IMAGE as JSON.

    IMAGE is an image reference such as ``nginx``, ``myorg/app:1.0`` or
    ``registry.example.com:5000/team/app@sha256:...``.
    """
    resolver = _build_resolver(settings, docker_config, auth)
    try:
        result = resolver.resolve_labels(image)
    except ResolutionError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        resolver.sessions.close()
    click.echo(_dump(result, pretty))


@main.command()
@click.argument("image")
@click.pass_obj
def parse(settings: Settings, image: str) -> None:
    """Print the components of IMAGE as JSON, without contacting a registry."""
    try:
        ref = settings.image_parser().parse(image)
    except ParseError as exc:
        raise click.ClickException(f"{exc.kind.value}: {exc}") from exc

    click.echo(
        _dump(
            {
                "hostname": ref.hostname,
                "port": ref.port,
                "registry_host": ref.registry_host,
                "repository_namespace": ref.repository_namespace,
                "repository_name": ref.repository_name,
                "repository": ref.repository,
                "reference_type": ref.reference_type.value,
                "repository_tag": ref.repository_tag,
                "repository_digest": ref.repository_digest,
                "canonical_name": ref.canonical_name,
            },
            pretty=True,
        )
    )


@main.command()
@click.argument("image")
@_docker_config_option
@_auth_option
@click.pass_obj
def tags(
    settings: Settings,
    image: str,
    docker_config: str | None,
    auth: tuple[str, ...],
) -> None:
    """List the tags of the repository of IMAGE, one per line."""
    resolver = _build_resolver(settings, docker_config, auth)
    try:
        result = resolver.get_tags(image)
    except ResolutionError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        resolver.sessions.close()
    for tag in result:
        click.echo(tag)


@main.command()
@click.argument("host")
@_docker_config_option
@_auth_option
@click.pass_obj
def repositories(
    settings: Settings,
    host: str,
    docker_config: str | None,
    auth: tuple[str, ...],
) -> None:
    """List the repositories in the catalog of registry HOST, one per line."""
    resolver = _build_resolver(settings, docker_config, auth)
    try:
        result = resolver.get_repositories(host)
    except ResolutionError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        resolver.sessions.close()
    for repository in result:
        click.echo(repository)


@main.command(name="authorizers")
def list_authorizers() -> None:
    """List all available authorizers."""
    all_authorizers = discover_authorizers()
    if not all_authorizers:
        click.echo("No authorizers found.")
        return

    for name, cls in sorted(all_authorizers.items()):
        doc = (cls.__doc__ or "").strip().splitlines()
        click.echo(f"  {name:14s}  {doc[0] if doc else ''}")


if __name__ == "__main__":
    main()
