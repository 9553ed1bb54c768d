"""Anonymous authorizer — no credentials."""

from __future__ import annotations

from imagelabels.authorizers.base import BaseAuthorizer
from imagelabels.config import AuthorizationType, RegistryConfiguration
from imagelabels.registry.parser import ImageReference


class AnonymousAuthorizer(BaseAuthorizer):
    """Access public registries without an Authorization header."""

    type = AuthorizationType.ANONYMOUS

    def get_authorization_headers(
        self,
        image: ImageReference,
        config: RegistryConfiguration,
    ) -> dict[str, str] | None:
        return {}
