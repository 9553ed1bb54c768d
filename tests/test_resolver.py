"""Tests for the metadata resolver."""

import pytest
import requests
import responses

from imagelabels.authorizers.anonymous import AnonymousAuthorizer
from imagelabels.authorizers.base import BaseAuthorizer
from imagelabels.config import (
    OCI_IMAGE_MANIFEST_MEDIA_TYPE,
    AuthorizationType,
    RegistryConfiguration,
    load_settings,
)
from imagelabels.registry.parser import ImageReferenceParser
from imagelabels.resolver import (
    MetadataResolver,
    ResolutionError,
    ResolutionErrorKind,
    create_resolver,
)

REGISTRY = "my-private-repository.com:5000"
IMAGE = f"{REGISTRY}/test/image:latest"
MANIFEST_URL = f"https://{REGISTRY}/v2/test/image/manifests/latest"
BLOB_URL = f"https://{REGISTRY}/v2/test/image/blobs/123"
AUTH_HEADERS = {"Authorization": "Basic dXNlcjpwYXNz"}


class StaticAuthorizer(BaseAuthorizer):
    """Return fixed headers, or raise a fixed error."""

    type = AuthorizationType.BASICAUTH

    def __init__(self, headers=None, error=None):
        super().__init__()
        self.headers = headers
        self.error = error

    def get_authorization_headers(self, image, config):
        if self.error is not None:
            raise self.error
        return self.headers


def make_resolver(authorizer=None, **config_kwargs):
    config = RegistryConfiguration(
        registry_host=REGISTRY,
        authorization_type=AuthorizationType.BASICAUTH,
        user="user",
        secret="pass",
        **config_kwargs,
    )
    authorizers = [authorizer] if authorizer is not None else []
    return MetadataResolver(ImageReferenceParser(), {REGISTRY: config}, authorizers)


@pytest.fixture
def resolver():
    return make_resolver(StaticAuthorizer(AUTH_HEADERS))


class TestResolveLabels:
    """Test successful label resolution."""

    @responses.activate
    def test_labels(self, resolver):
        responses.add(responses.GET, MANIFEST_URL, json={"config": {"digest": "123"}})
        responses.add(responses.GET, BLOB_URL, json={"config": {"Labels": {"boza": "koza"}}})

        assert resolver.resolve_labels(IMAGE) == {"boza": "koza"}

        assert len(responses.calls) == 2
        manifest_request, blob_request = (call.request for call in responses.calls)
        assert manifest_request.headers["Authorization"] == AUTH_HEADERS["Authorization"]
        assert manifest_request.headers["Accept"] == (
            "application/vnd.docker.distribution.manifest.v2+json"
        )
        assert blob_request.headers["Authorization"] == AUTH_HEADERS["Authorization"]

    @responses.activate
    def test_configured_manifest_media_type(self):
        resolver = make_resolver(
            StaticAuthorizer(AUTH_HEADERS), manifest_media_type=OCI_IMAGE_MANIFEST_MEDIA_TYPE
        )
        responses.add(responses.GET, MANIFEST_URL, json={"config": {"digest": "123"}})
        responses.add(responses.GET, BLOB_URL, json={"config": {"Labels": {"a": "b"}}})

        resolver.resolve_labels(IMAGE)
        assert responses.calls[0].request.headers["Accept"] == OCI_IMAGE_MANIFEST_MEDIA_TYPE

    @responses.activate
    def test_digest_reference(self, resolver):
        digest = "sha256:" + "a" * 64
        responses.add(
            responses.GET,
            f"https://{REGISTRY}/v2/test/image/manifests/{digest}",
            json={"config": {"digest": "sha256:cfg"}},
        )
        responses.add(
            responses.GET,
            f"https://{REGISTRY}/v2/test/image/blobs/sha256:cfg",
            json={"config": {"Labels": {"org.opencontainers.image.version": "1.2.3"}}},
        )

        labels = resolver.resolve_labels(f"{REGISTRY}/test/image@{digest}")
        assert labels == {"org.opencontainers.image.version": "1.2.3"}

    @responses.activate
    def test_tag_and_digest_fetches_by_digest(self, resolver):
        digest = "sha256:" + "b" * 64
        responses.add(
            responses.GET,
            f"https://{REGISTRY}/v2/test/image/manifests/{digest}",
            json={"config": {"digest": "123"}},
        )
        responses.add(responses.GET, BLOB_URL, json={"config": {"Labels": {"boza": "koza"}}})

        labels = resolver.resolve_labels(f"{REGISTRY}/test/image:1.0@{digest}")

        assert labels == {"boza": "koza"}
        assert responses.calls[0].request.url == (
            f"https://{REGISTRY}/v2/test/image/manifests/{digest}"
        )

    @pytest.mark.parametrize(
        "blob",
        [
            {"config": {}},
            {"config": {"Labels": None}},
            {"config": None},
            {},
        ],
    )
    @responses.activate
    def test_no_labels_is_empty_result(self, resolver, blob):
        responses.add(responses.GET, MANIFEST_URL, json={"config": {"digest": "123"}})
        responses.add(responses.GET, BLOB_URL, json=blob)

        assert resolver.resolve_labels(IMAGE) == {}

    @responses.activate
    def test_anonymous_headers_are_accepted(self):
        resolver = make_resolver(StaticAuthorizer({}))
        responses.add(responses.GET, MANIFEST_URL, json={"config": {"digest": "123"}})
        responses.add(responses.GET, BLOB_URL, json={"config": {"Labels": {"x": "y"}}})

        assert resolver.resolve_labels(IMAGE) == {"x": "y"}
        assert "Authorization" not in responses.calls[0].request.headers

    @responses.activate
    def test_undeclared_authorization_type_is_anonymous(self):
        config = RegistryConfiguration(registry_host=REGISTRY)
        resolver = MetadataResolver(
            ImageReferenceParser(), {REGISTRY: config}, [AnonymousAuthorizer()]
        )
        responses.add(responses.GET, MANIFEST_URL, json={"config": {"digest": "123"}})
        responses.add(responses.GET, BLOB_URL, json={"config": {"Labels": {"x": "y"}}})

        assert resolver.resolve_labels(IMAGE) == {"x": "y"}
        assert resolver.registry_configurations[REGISTRY].authorization_type is (
            AuthorizationType.ANONYMOUS
        )


class TestResolveFailures:
    """Test that every failure surfaces as a ResolutionError with its kind."""

    def test_invalid_reference(self, resolver):
        with pytest.raises(ResolutionError) as exc_info:
            resolver.resolve_labels("localhost:80bla/scdf/spring-image:123")
        assert exc_info.value.kind is ResolutionErrorKind.INVALID_REFERENCE
        assert exc_info.value.retryable is False

    def test_unknown_registry(self, resolver):
        with pytest.raises(ResolutionError) as exc_info:
            resolver.resolve_labels("other-registry.io/test/image:latest")
        assert exc_info.value.kind is ResolutionErrorKind.UNKNOWN_REGISTRY
        assert "other-registry.io" in str(exc_info.value)

    def test_missing_authorizer(self):
        resolver = make_resolver(authorizer=None)
        with pytest.raises(ResolutionError) as exc_info:
            resolver.resolve_labels(IMAGE)
        assert exc_info.value.kind is ResolutionErrorKind.NO_AUTHORIZER

    def test_null_authorization_headers(self):
        resolver = make_resolver(StaticAuthorizer(None))
        with pytest.raises(ResolutionError) as exc_info:
            resolver.resolve_labels(IMAGE)
        assert exc_info.value.kind is ResolutionErrorKind.AUTHORIZATION_FAILED

    def test_authorizer_exception(self):
        error = requests.ConnectionError("token service down")
        resolver = make_resolver(StaticAuthorizer(error=error))
        with pytest.raises(ResolutionError) as exc_info:
            resolver.resolve_labels(IMAGE)
        assert exc_info.value.kind is ResolutionErrorKind.TRANSPORT
        assert exc_info.value.cause is error
        assert exc_info.value.retryable is True

    @pytest.mark.parametrize(
        "manifest",
        [
            {},
            {"config": {}},
            {"config": {"digest": ""}},
            {"config": {"digest": None}},
            {"config": "sha256:123"},
        ],
    )
    @responses.activate
    def test_malformed_manifest(self, resolver, manifest):
        responses.add(responses.GET, MANIFEST_URL, json=manifest)

        with pytest.raises(ResolutionError) as exc_info:
            resolver.resolve_labels(IMAGE)
        assert exc_info.value.kind is ResolutionErrorKind.MALFORMED_MANIFEST
        assert len(responses.calls) == 1

    @responses.activate
    def test_non_json_manifest(self, resolver):
        responses.add(responses.GET, MANIFEST_URL, body="<html>oops</html>")

        with pytest.raises(ResolutionError) as exc_info:
            resolver.resolve_labels(IMAGE)
        assert exc_info.value.kind is ResolutionErrorKind.MALFORMED_MANIFEST
        assert exc_info.value.cause is not None

    @responses.activate
    def test_non_object_blob(self, resolver):
        responses.add(responses.GET, MANIFEST_URL, json={"config": {"digest": "123"}})
        responses.add(responses.GET, BLOB_URL, json=["not", "an", "object"])

        with pytest.raises(ResolutionError) as exc_info:
            resolver.resolve_labels(IMAGE)
        assert exc_info.value.kind is ResolutionErrorKind.MALFORMED_MANIFEST

    @pytest.mark.parametrize("status", [401, 403])
    @responses.activate
    def test_manifest_unauthorized(self, resolver, status):
        responses.add(responses.GET, MANIFEST_URL, status=status)

        with pytest.raises(ResolutionError) as exc_info:
            resolver.resolve_labels(IMAGE)
        assert exc_info.value.kind is ResolutionErrorKind.AUTHORIZATION_FAILED

    @responses.activate
    def test_blob_unauthorized(self, resolver):
        responses.add(responses.GET, MANIFEST_URL, json={"config": {"digest": "123"}})
        responses.add(responses.GET, BLOB_URL, status=403)

        with pytest.raises(ResolutionError) as exc_info:
            resolver.resolve_labels(IMAGE)
        assert exc_info.value.kind is ResolutionErrorKind.AUTHORIZATION_FAILED

    @pytest.mark.parametrize("status", [404, 500, 503])
    @responses.activate
    def test_manifest_http_error(self, resolver, status):
        responses.add(responses.GET, MANIFEST_URL, status=status)

        with pytest.raises(ResolutionError) as exc_info:
            resolver.resolve_labels(IMAGE)
        assert exc_info.value.kind is ResolutionErrorKind.TRANSPORT
        assert exc_info.value.cause.status_code == status

    @responses.activate
    def test_timeout(self, resolver):
        responses.add(
            responses.GET,
            MANIFEST_URL,
            body=requests.exceptions.ConnectTimeout("timed out"),
        )

        with pytest.raises(ResolutionError) as exc_info:
            resolver.resolve_labels(IMAGE)
        assert exc_info.value.kind is ResolutionErrorKind.TRANSPORT
        assert exc_info.value.retryable is True

    def test_error_message_names_kind(self):
        error = ResolutionError(ResolutionErrorKind.UNKNOWN_REGISTRY, "no config")
        assert str(error) == "unknown_registry: no config"
        assert error.cause is None


class TestRegistryRequest:
    """Test registry_request and get_tags."""

    def test_registry_request(self, resolver):
        request = resolver.registry_request(IMAGE)
        assert request.image.registry_host == REGISTRY
        assert request.config.registry_host == REGISTRY
        assert request.headers == AUTH_HEADERS
        assert request.client.registry_host == REGISTRY

    @responses.activate
    def test_get_tags(self, resolver):
        responses.add(
            responses.GET,
            f"https://{REGISTRY}/v2/test/image/tags/list",
            json={"name": "test/image", "tags": ["2.0", "1.0", "latest"]},
        )

        assert resolver.get_tags(IMAGE) == ["1.0", "2.0", "latest"]
        assert responses.calls[0].request.headers["Authorization"] == AUTH_HEADERS["Authorization"]

    @responses.activate
    def test_get_tags_not_found(self, resolver):
        responses.add(responses.GET, f"https://{REGISTRY}/v2/test/image/tags/list", status=404)

        with pytest.raises(ResolutionError) as exc_info:
            resolver.get_tags(IMAGE)
        assert exc_info.value.kind is ResolutionErrorKind.TRANSPORT


class TestGetRepositories:
    """Test registry catalog listing."""

    CATALOG_URL = f"https://{REGISTRY}/v2/_catalog"

    @responses.activate
    def test_get_repositories(self, resolver):
        responses.add(
            responses.GET,
            self.CATALOG_URL,
            json={"repositories": ["test/image", "test/other"]},
        )

        assert resolver.get_repositories(REGISTRY) == ["test/image", "test/other"]
        request = responses.calls[0].request
        assert request.headers["Accept"] == "application/json"
        assert request.headers["Authorization"] == AUTH_HEADERS["Authorization"]

    @responses.activate
    def test_authorizer_sees_registry_as_repository(self):
        seen = []

        class RecordingAuthorizer(StaticAuthorizer):
            def get_authorization_headers(self, image, config):
                seen.append(image)
                return {}

        resolver = make_resolver(RecordingAuthorizer())
        responses.add(responses.GET, self.CATALOG_URL, json={"repositories": []})

        assert resolver.get_repositories(REGISTRY) == []

        (image,) = seen
        assert image.registry_host == REGISTRY
        assert image.repository == REGISTRY

    def test_unknown_registry(self, resolver):
        with pytest.raises(ResolutionError) as exc_info:
            resolver.get_repositories("other-registry.io")
        assert exc_info.value.kind is ResolutionErrorKind.UNKNOWN_REGISTRY

    def test_missing_authorizer(self):
        resolver = make_resolver(authorizer=None)
        with pytest.raises(ResolutionError) as exc_info:
            resolver.get_repositories(REGISTRY)
        assert exc_info.value.kind is ResolutionErrorKind.NO_AUTHORIZER

    def test_null_authorization_headers(self):
        resolver = make_resolver(StaticAuthorizer(None))
        with pytest.raises(ResolutionError) as exc_info:
            resolver.get_repositories(REGISTRY)
        assert exc_info.value.kind is ResolutionErrorKind.AUTHORIZATION_FAILED

    @pytest.mark.parametrize("status", [401, 403])
    @responses.activate
    def test_catalog_unauthorized(self, resolver, status):
        responses.add(responses.GET, self.CATALOG_URL, status=status)

        with pytest.raises(ResolutionError) as exc_info:
            resolver.get_repositories(REGISTRY)
        assert exc_info.value.kind is ResolutionErrorKind.AUTHORIZATION_FAILED


class TestCreateResolver:
    """Test wiring a resolver from settings."""

    def test_builtin_settings(self):
        resolver = create_resolver(load_settings())
        config = resolver.registry_configurations["registry-1.docker.io"]
        assert config.authorization_type is AuthorizationType.DOCKEROAUTH2
        assert set(resolver.authorizers) == set(AuthorizationType)
        assert resolver.timeout == (5.0, 30.0)

    def test_cli_credentials_applied(self):
        resolver = create_resolver(
            load_settings(), cli_auths=["docker.io=someone:secret"]
        )
        config = resolver.registry_configurations["registry-1.docker.io"]
        assert config.user == "someone"
        assert config.secret == "secret"

    @responses.activate
    def test_docker_config_registries(self):
        responses.add(
            responses.GET,
            "https://harbor.example.com/v2/",
            status=401,
            headers={
                "WWW-Authenticate": (
                    'Bearer realm="https://harbor.example.com/service/token",'
                    'service="harbor-registry"'
                )
            },
        )
        responses.add(responses.GET, "https://artifacts.example.com/v2/", status=200, json={})

        resolver = create_resolver(
            load_settings(),
            docker_config_auths={
                "harbor.example.com": ("robot", "token"),
                "artifacts.example.com": ("deployer", "pw"),
            },
        )

        harbor = resolver.registry_configurations["harbor.example.com"]
        assert harbor.authorization_type is AuthorizationType.DOCKEROAUTH2
        assert harbor.extra["registryAuthUri"] == (
            "https://harbor.example.com/service/token?service=harbor-registry"
            "&scope=repository:{repository}:pull"
        )
        assert harbor.user == "robot"

        artifacts = resolver.registry_configurations["artifacts.example.com"]
        assert artifacts.authorization_type is AuthorizationType.BASICAUTH
        assert artifacts.secret == "pw"

        # Declared Docker Hub configuration survives the merge.
        assert "registry-1.docker.io" in resolver.registry_configurations
