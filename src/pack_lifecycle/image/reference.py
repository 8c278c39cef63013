"""Image reference parsing."""

from dataclasses import dataclass

DEFAULT_REGISTRY = "index.docker.io"
DEFAULT_TAG = "latest"


@dataclass(frozen=True)
class ImageReference:
    """A parsed image name: registry, repository and tag or digest."""

    registry: str
    repository: str
    reference: str

    @property
    def is_digest(self) -> bool:
        return self.reference.startswith("sha256:")

    @property
    def tag(self) -> str:
        return DEFAULT_TAG if self.is_digest else self.reference

    @property
    def registry_host(self) -> str:
        """Host used for API calls (Docker Hub serves from registry-1)."""
        if self.registry == DEFAULT_REGISTRY:
            return "registry-1.docker.io"
        return self.registry

    @property
    def context(self) -> str:
        """Registry plus repository, without the tag."""
        return f"{self.registry}/{self.repository}"

    def __str__(self) -> str:
        separator = "@" if self.is_digest else ":"
        return f"{self.context}{separator}{self.reference}"


def _looks_like_registry(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


def parse_reference(name: str) -> ImageReference:
    """Parse an image name into registry, repository and reference.

    Args:
        name: Image name
            - "nginx" -> index.docker.io/library/nginx:latest
            - "myorg/app:v1" -> index.docker.io/myorg/app:v1
            - "localhost:5000/app:latest" -> localhost:5000/app:latest
            - "registry.io/app@sha256:..." -> digest reference

    Returns:
        ImageReference

    Raises:
        ValueError: If the name is empty
    """
    if not name or not name.strip():
        raise ValueError("Image name must not be empty")
    name = name.strip()

    reference = DEFAULT_TAG
    if "@" in name:
        name, reference = name.split("@", 1)
    else:
        # Split only on the last ':' after the final '/' to keep registry ports
        last_slash = name.rfind("/")
        colon = name.rfind(":")
        if colon > last_slash:
            name, tag = name[:colon], name[colon + 1 :]
            reference = tag or DEFAULT_TAG

    parts = name.split("/", 1)
    if len(parts) == 2 and _looks_like_registry(parts[0]):
        registry, repository = parts
    else:
        registry, repository = DEFAULT_REGISTRY, name

    if registry in (DEFAULT_REGISTRY, "docker.io") and "/" not in repository:
        repository = f"library/{repository}"
    if registry == "docker.io":
        registry = DEFAULT_REGISTRY

    return ImageReference(registry=registry, repository=repository, reference=reference)


def local_tag(name: str) -> str:
    """Name with an explicit tag, as the daemon records it in RepoTags."""
    last_slash = name.rfind("/")
    if name.rfind(":") > last_slash or "@" in name:
        return name
    return f"{name}:{DEFAULT_TAG}"
