"""Amazon ECR authorizer — authorization tokens from the AWS ECR API."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

import boto3

from imagelabels.authorizers.base import AuthorizerError, BaseAuthorizer, TokenCache
from imagelabels.config import AuthorizationType, RegistryConfiguration
from imagelabels.registry.parser import ImageReference

logger = logging.getLogger(__name__)

REGION_KEY = "region"
REGISTRY_IDS_KEY = "registryIds"


class AwsEcrAuthorizer(BaseAuthorizer):
    """Exchange AWS credentials for an ECR authorization token.

    ``user`` and ``secret`` are used as the AWS access and secret keys when
    set; otherwise boto3 resolves credentials from its default chain (env,
    profile, IAM role). The region comes from ``extra['region']`` or from the
    ``<account>.dkr.ecr.<region>.amazonaws.com`` registry host, and
    ``extra['registryIds']`` may list account ids (comma separated).
    """

    type = AuthorizationType.AWSECR

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._tokens = TokenCache(margin=300.0)

    def get_authorization_headers(
        self,
        image: ImageReference,
        config: RegistryConfiguration,
    ) -> dict[str, str] | None:
        region = config.extra.get(REGION_KEY) or _region_from_host(config.registry_host)
        if not region:
            raise AuthorizerError(f"Cannot determine the AWS region for {config.registry_host}")

        registry_ids = [
            rid.strip() for rid in config.extra.get(REGISTRY_IDS_KEY, "").split(",") if rid.strip()
        ]
        token = self._tokens.get(
            (config.registry_host, region, tuple(registry_ids), config.user),
            lambda: self._fetch_token(config, region, registry_ids),
        )
        if token is None:
            return None
        return {"Authorization": f"Basic {token}"}

    def _fetch_token(
        self,
        config: RegistryConfiguration,
        region: str,
        registry_ids: list[str],
    ) -> tuple[str, float | None] | None:
        client_kwargs = {"region_name": region}
        if config.user and config.secret:
            client_kwargs["aws_access_key_id"] = config.user
            client_kwargs["aws_secret_access_key"] = config.secret
        ecr_client = boto3.client("ecr", **client_kwargs)

        request = {"registryIds": registry_ids} if registry_ids else {}
        response = ecr_client.get_authorization_token(**request)

        auth_data = response.get("authorizationData") or []
        if not auth_data or not auth_data[0].get("authorizationToken"):
            logger.warning("ECR returned no authorization data for %s", config.registry_host)
            return None

        # The token is already base64("AWS:<password>").
        token = auth_data[0]["authorizationToken"]
        return token, _monotonic_deadline(auth_data[0].get("expiresAt"))


def _region_from_host(registry_host: str) -> str | None:
    # <account>.dkr.ecr.<region>.amazonaws.com
    parts = registry_host.split(":")[0].split(".")
    if len(parts) >= 6 and parts[1] == "dkr" and parts[2] == "ecr":
        return parts[3]
    return None


def _monotonic_deadline(expires_at: datetime | None) -> float | None:
    """Convert a wall-clock expiry into a :func:`time.monotonic` deadline."""
    if not isinstance(expires_at, datetime):
        return None
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    remaining = (expires_at - datetime.now(timezone.utc)).total_seconds()
    return time.monotonic() + remaining
