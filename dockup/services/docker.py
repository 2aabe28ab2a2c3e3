import abc
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import docker
from docker.errors import DockerException, NotFound
from docker.models.containers import Container

from ..errors import TopologyError
from .references import parse_image_ref

COMPOSE_PROJECT_LABEL = "com.docker.compose.project"
COMPOSE_SERVICE_LABEL = "com.docker.compose.service"
COMPOSE_WORKING_DIR_LABEL = "com.docker.compose.project.working_dir"
COMPOSE_CONFIG_FILES_LABEL = "com.docker.compose.project.config_files"


@dataclass(frozen=True)
class ContainerSnapshot:
    id: str
    name: str
    image: str
    image_id: str
    state: str
    project: Optional[str] = None
    service: Optional[str] = None
    working_dir: Optional[str] = None
    config_files: Tuple[str, ...] = ()

    @classmethod
    def from_labels(
        cls, id: str, name: str, image: str, image_id: str, state: str, labels: Optional[Dict[str, str]]
    ) -> "ContainerSnapshot":
        labels = labels or {}
        config_files = tuple(
            part.strip() for part in (labels.get(COMPOSE_CONFIG_FILES_LABEL) or "").split(",") if part.strip()
        )
        return cls(
            id=id,
            name=name,
            image=image,
            image_id=image_id,
            state=state,
            project=labels.get(COMPOSE_PROJECT_LABEL) or None,
            service=labels.get(COMPOSE_SERVICE_LABEL) or None,
            working_dir=labels.get(COMPOSE_WORKING_DIR_LABEL) or None,
            config_files=config_files,
        )

    @property
    def running(self) -> bool:
        return self.state in ("running", "restarting")

    @property
    def compose_managed(self) -> bool:
        return bool(self.project and self.service)

    @property
    def config_paths(self) -> Tuple[str, ...]:
        """Compose files with relative entries resolved against the project working dir."""
        paths = []
        for path in self.config_files:
            if not os.path.isabs(path) and self.working_dir:
                path = os.path.abspath(os.path.join(self.working_dir, path))
            paths.append(path)
        return tuple(paths)


@dataclass(frozen=True)
class LocalImage:
    id: str
    repo_digests: Tuple[str, ...] = ()
    labels: Dict[str, str] = field(default_factory=dict)

    def digest_for(self, image: str) -> Optional[str]:
        """Digest recorded for ``image``'s repository, else the first one known."""
        ref = parse_image_ref(image)
        fallback = None
        for entry in self.repo_digests:
            if "@" not in entry:
                continue
            repo, digest = entry.split("@", 1)
            fallback = fallback or digest
            candidate = parse_image_ref(repo)
            if candidate.registry == ref.registry and candidate.repository == ref.repository:
                return digest
        return fallback


class EngineGateway(abc.ABC):
    """What dockup reads from the container engine."""

    @abc.abstractmethod
    def list_containers(self) -> List[ContainerSnapshot]:
        """All containers, running or not. Raises TopologyError when the engine is unreachable."""

    @abc.abstractmethod
    def get_container(self, id_or_name: str) -> Optional[ContainerSnapshot]:
        ...

    @abc.abstractmethod
    def local_image(self, image: str) -> Optional[LocalImage]:
        """Inspect a local image by id or reference; ``None`` when it is not present."""

    def project_snapshot(self, project: str) -> List[ContainerSnapshot]:
        return [c for c in self.list_containers() if c.project == project]


class DockerGateway(EngineGateway):
    def __init__(self, client: Optional[docker.DockerClient] = None):
        self.logger = logging.getLogger(__name__)
        self.docker_client = client or docker.from_env()
        self.docker_api = self.docker_client.api

    def is_engine_running(self) -> bool:
        try:
            self.docker_client.ping()
            return True
        except DockerException:
            return False

    def _snapshot(self, container: Container) -> ContainerSnapshot:
        attrs = container.attrs or {}
        config = attrs.get("Config") or {}
        state = (attrs.get("State") or {}).get("Status") or container.status or "unknown"
        return ContainerSnapshot.from_labels(
            id=container.id,
            name=container.name,
            image=config.get("Image") or "",
            image_id=attrs.get("Image") or "",
            state=state,
            labels=config.get("Labels") or container.labels,
        )

    def list_containers(self) -> List[ContainerSnapshot]:
        try:
            containers = self.docker_client.containers.list(all=True)
        except DockerException as exc:
            raise TopologyError(f"Unable to list containers: {exc}") from exc

        snapshots = [self._snapshot(c) for c in containers]
        snapshots.sort(key=lambda c: (c.project or "", c.name.lower()))
        return snapshots

    def get_container(self, id_or_name: str) -> Optional[ContainerSnapshot]:
        try:
            return self._snapshot(self.docker_client.containers.get(id_or_name))
        except NotFound:
            raise TopologyError(f"Unable to inspect container {id_or_name}: {exc}") from exc

    def local_image(self, image: str) -> Optional[LocalImage]:
        try:
            attrs = self.docker_api.inspect_image(image)
        except NotFound:
            return None
        except DockerException as exc:
            self.logger.warning("Unable to inspect image %s: %s", image, exc)
            return None

        return LocalImage(
            id=attrs.get("Id") or image,
            repo_digests=tuple(attrs.get("RepoDigests") or ()),
            labels=dict((attrs.get("Config") or {}).get("Labels") or {}),
        )
