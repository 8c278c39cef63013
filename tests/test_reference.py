"""Tests for image reference parsing."""

import pytest

from pack_lifecycle.core.types import LifecycleConfig
from pack_lifecycle.image.reference import local_tag, parse_reference


@pytest.mark.parametrize(
    "name,registry,repository,reference",
    [
        ("nginx", "index.docker.io", "library/nginx", "latest"),
        ("nginx:1.25", "index.docker.io", "library/nginx", "1.25"),
        ("docker.io/nginx", "index.docker.io", "library/nginx", "latest"),
        ("myorg/app:v1", "index.docker.io", "myorg/app", "v1"),
        ("localhost:5000/app", "localhost:5000", "app", "latest"),
        ("localhost:5000/team/app:dev", "localhost:5000", "team/app", "dev"),
        ("gcr.io/project/app@sha256:" + "a" * 64, "gcr.io", "project/app", "sha256:" + "a" * 64),
    ],
)
def test_parse_reference(name, registry, repository, reference):
    ref = parse_reference(name)

    assert (ref.registry, ref.repository, ref.reference) == (registry, repository, reference)


def test_reference_properties():
    hub = parse_reference("packs/run")
    digest = parse_reference("registry.example.com/app@sha256:" + "b" * 64)

    assert hub.registry_host == "registry-1.docker.io"
    assert hub.context == "index.docker.io/packs/run"
    assert str(hub) == "index.docker.io/packs/run:latest"
    assert digest.is_digest
    assert digest.tag == "latest"
    assert str(digest) == "registry.example.com/app@sha256:" + "b" * 64


def test_parse_empty_reference():
    with pytest.raises(ValueError):
        parse_reference("  ")


@pytest.mark.parametrize(
    "name,expected",
    [
        ("app", "app:latest"),
        ("app:v2", "app:v2"),
        ("localhost:5000/app", "localhost:5000/app:latest"),
        ("app@sha256:abc", "app@sha256:abc"),
    ],
)
def test_local_tag(name, expected):
    assert local_tag(name) == expected


def test_registry_config_scheme():
    config = LifecycleConfig(insecure_registries=("registry.internal:5000",))

    assert config.registry_config("localhost:5000").url == "http://localhost:5000"
    assert config.registry_config("registry.internal:5000").url == "http://registry.internal:5000"
    assert config.registry_config("gcr.io").url == "https://gcr.io"


def test_lifecycle_config_from_env(monkeypatch):
    monkeypatch.setenv("PACK_INSECURE_REGISTRIES", "a:5000, b:5000")
    monkeypatch.setenv("PACK_COMPRESS_LAYERS", "true")
    monkeypatch.setenv("PACK_PULL", "0")
    monkeypatch.setenv("PACK_REGISTRY_USERNAME", "user")
    monkeypatch.setenv("PACK_REGISTRY_PASSWORD", "secret")

    config = LifecycleConfig.from_env()

    assert config.insecure_registries == ("a:5000", "b:5000")
    assert config.compress_layers is True
    assert config.pull is False
    assert config.registry_config("a:5000").username == "user"
