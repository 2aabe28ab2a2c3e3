from dataclasses import dataclass
from typing import Optional

DEFAULT_REGISTRY = "docker.io"
DEFAULT_NAMESPACE = "library"
DEFAULT_TAG = "latest"

DOCKER_HUB_ALIASES = {"docker.io", "index.docker.io", "registry-1.docker.io", "registry.hub.docker.com"}

FAMILY_DOCKERHUB = "dockerhub"
FAMILY_GHCR = "ghcr"
FAMILY_LSCR = "lscr"
FAMILY_GENERIC = "generic"


@dataclass(frozen=True)
class ImageReference:
    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    @property
    def namespace(self) -> str:
        if "/" not in self.repository:
            return ""
        return self.repository.rsplit("/", 1)[0]

    @property
    def name(self) -> str:
        return self.repository.rsplit("/", 1)[-1]

    @property
    def family(self) -> str:
        return registry_family(self.registry)

    @property
    def api_host(self) -> str:
        """Host that serves the distribution API for this reference."""
        if self.family == FAMILY_DOCKERHUB:
            return "registry-1.docker.io"
        return self.registry

    @property
    def reference(self) -> str:
        """The manifest reference to query: the digest when pinned, else the tag."""
        return self.digest or self.tag or DEFAULT_TAG

    def format(self) -> str:
        return format_image_ref(self)

    def __str__(self) -> str:
        return self.format()


def _is_registry_host(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


def parse_image_ref(raw: str) -> ImageReference:
    """Parse a Docker image reference into its components.

    Handles the usual shorthand forms::

        nginx                            -> docker.io/library/nginx:latest
        nginx:1.25                       -> docker.io/library/nginx:1.25
        user/repo:tag                    -> docker.io/user/repo:tag
        ghcr.io/owner/repo:tag
        registry.example.com:5000/repo:tag
        repo:tag@sha256:...              -> tag and digest both kept

    Never raises: anything unparseable ends up as a repository on Docker Hub.
    """
    reference = (raw or "").strip()
    digest: Optional[str] = None
    tag: Optional[str] = None

    digest_index = reference.find("@sha256:")
    if digest_index > 0:
        digest = reference[digest_index + 1:]
        reference = reference[:digest_index]

    tag_index = reference.rfind(":")
    slash_index = reference.rfind("/")
    if tag_index > slash_index and tag_index != -1:
        tag = reference[tag_index + 1:] or None
        reference = reference[:tag_index]

    parts = [part for part in reference.split("/") if part]
    registry = DEFAULT_REGISTRY

    if len(parts) > 1 and _is_registry_host(parts[0]):
        registry = parts[0].lower()
        parts = parts[1:]

    if registry in DOCKER_HUB_ALIASES:
        registry = DEFAULT_REGISTRY

    repository = "/".join(parts) or "unknown"
    if registry == DEFAULT_REGISTRY and "/" not in repository:
        repository = f"{DEFAULT_NAMESPACE}/{repository}"

    if not tag and not digest:
        tag = DEFAULT_TAG

    return ImageReference(registry=registry, repository=repository, tag=tag, digest=digest)


def format_image_ref(ref: ImageReference) -> str:
    """Render the shortest string that parses back to ``ref``."""
    repository = ref.repository
    if ref.registry == DEFAULT_REGISTRY:
        if repository.startswith(f"{DEFAULT_NAMESPACE}/") and repository.count("/") == 1:
            repository = repository[len(DEFAULT_NAMESPACE) + 1:]
        head, sep, _ = repository.partition("/")
        # A namespace such as "localhost" or "foo.bar" would read as a registry host.
        text = f"{DEFAULT_REGISTRY}/{repository}" if sep and _is_registry_host(head) else repository
    else:
        text = f"{ref.registry}/{repository}"

    if ref.tag:
        text = f"{text}:{ref.tag}"
    if ref.digest:
        text = f"{text}@{ref.digest}"
    return text


def normalize_image_name(name: str) -> str:
    """Strip the implicit Docker Hub prefixes so equal images share one key."""
    name = (name or "").strip()
    for prefix in ("docker.io/library/", "docker.io/"):
        if not name.startswith(prefix):
            continue
        rest = name[len(prefix):]
        head, sep, _ = rest.partition("/")
        if sep and _is_registry_host(head):
            continue
        return rest
    return name


def registry_family(registry: str) -> str:
    host = (registry or "").lower()
    if host in DOCKER_HUB_ALIASES:
        return FAMILY_DOCKERHUB
    if host == "ghcr.io":
        return FAMILY_GHCR
    if host == "lscr.io":
        return FAMILY_LSCR
    return FAMILY_GENERIC
