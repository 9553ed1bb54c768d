"""Basic authorizer — HTTP Basic credentials sent to the registry."""

from __future__ import annotations

import base64
import logging

from imagelabels.authorizers.base import BaseAuthorizer
from imagelabels.config import AuthorizationType, RegistryConfiguration
from imagelabels.registry.parser import ImageReference

logger = logging.getLogger(__name__)


class BasicAuthAuthorizer(BaseAuthorizer):
    """Send the configured user and secret as HTTP Basic credentials."""

    type = AuthorizationType.BASICAUTH

    def get_authorization_headers(
        self,
        image: ImageReference,
        config: RegistryConfiguration,
    ) -> dict[str, str] | None:
        if not config.user or not config.secret:
            logger.warning("No credentials configured for %s", config.registry_host)
            return None
        creds = base64.b64encode(f"{config.user}:{config.secret}".encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {creds}"}
