"""In-memory stand-ins for the container engine and docker compose.

Enabled with ``DOCKUP_DEMO_MODE``: the dashboard then runs against a fixed set
of projects, and update runs change that state instead of touching a real
engine.
"""

import hashlib
import logging
import threading
from dataclasses import replace
from typing import Any, Dict, List, Optional

from ..errors import NotFoundError
from .compose import ComposeDriver, ComposeResult, OutputCallback
from .docker import (
    COMPOSE_CONFIG_FILES_LABEL,
    COMPOSE_PROJECT_LABEL,
    COMPOSE_SERVICE_LABEL,
    COMPOSE_WORKING_DIR_LABEL,
    ContainerSnapshot,
    EngineGateway,
    LocalImage,
)
from .references import normalize_image_name, parse_image_ref
from .versions import VersionInfo, extract_source_url, is_semver_like

# (project, service, image, running, newer tag or None)
_FIXTURES = (
    ("web", "nginx", "nginx:1.25-alpine", True, "1.27-alpine"),
    ("web", "api", "node:20-alpine", True, None),
    ("web", "redis", "redis:7.2", True, "7.4"),
    ("media", "jellyfin", "jellyfin/jellyfin:10.8.13", True, "10.9.11"),
    ("media", "sonarr", "lscr.io/linuxserver/sonarr:4.0.0", True, None),
    ("monitoring", "prometheus", "prom/prometheus:v2.48.0", True, None),
    ("monitoring", "grafana", "grafana/grafana:10.2.0", True, "10.4.2"),
    ("legacy", "web", "php:8.1-apache", False, "8.3-apache"),
    ("legacy", "db", "mariadb:10.6", False, None),
    (None, None, "syncthing/syncthing:1.27", True, "1.28"),
)


def _fake_digest(*parts: str) -> str:
    return "sha256:" + hashlib.sha256("/".join(parts).encode("utf-8")).hexdigest()


class DemoGateway(EngineGateway):
    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._containers: Dict[str, ContainerSnapshot] = {}
        self._images: Dict[str, Dict[str, Any]] = {}
        self._pending: Dict[str, str] = {}
        self._load_fixtures()

    def _load_fixtures(self) -> None:
        for project, service, image, running, newer in _FIXTURES:
            key = normalize_image_name(image)
            image_id = _fake_digest("image", key)
            self._images[image_id] = {
                "id": image_id,
                "tags": [image],
                "repo_digests": (f"{image.rsplit(':', 1)[0]}@{_fake_digest('manifest', key)}",),
                "labels": {"org.opencontainers.image.version": image.rsplit(":", 1)[-1]},
            }
            if newer:
                self._pending[key] = newer

            name = f"{project}-{service}-1" if project else parse_image_ref(image).name
            labels: Dict[str, str] = {}
            if project:
                working_dir = f"/srv/compose/{project}"
                labels = {
                    COMPOSE_PROJECT_LABEL: project,
                    COMPOSE_SERVICE_LABEL: service,
                    COMPOSE_WORKING_DIR_LABEL: working_dir,
                    COMPOSE_CONFIG_FILES_LABEL: f"{working_dir}/compose.yaml",
                }

            container_id = _fake_digest("container", name)[7:]
            self._containers[container_id] = ContainerSnapshot.from_labels(
                id=container_id,
                name=name,
                image=image,
                image_id=image_id,
                state="running" if running else "exited",
                labels=labels,
            )

    # -- containers --

    def list_containers(self) -> List[ContainerSnapshot]:
        with self._lock:
            containers = list(self._containers.values())
        return sorted(containers, key=lambda c: (c.project or "", c.name))

    def get_container(self, id_or_name: str) -> Optional[ContainerSnapshot]:
        with self._lock:
            for container in self._containers.values():
                if id_or_name in (container.id, container.name) or container.id.startswith(id_or_name):
                    return container
        return None

    def _set_state(self, id_or_name: str, state: str) -> None:
        container = self.get_container(id_or_name)
        if container is None:
            raise NotFoundError(f"Container {id_or_name} not found")
        with self._lock:
            self._containers[container.id] = replace(container, state=state)

    def start_container(self, id_or_name: str) -> None:
        self._set_state(id_or_name, "running")

    def stop_container(self, id_or_name: str) -> None:
        self._set_state(id_or_name, "exited")

    # -- images --

    def local_image(self, image: str) -> Optional[LocalImage]:
        key = normalize_image_name(image)
        with self._lock:
            for image_id, data in self._images.items():
                if image == image_id or key in (normalize_image_name(tag) for tag in data["tags"]):
                    return LocalImage(image_id, tuple(data["repo_digests"]), dict(data["labels"]))
        return None

    def pending_update(self, image: str) -> Optional[str]:
        with self._lock:
            return self._pending.get(normalize_image_name(image))

    def mark_pulled(self, image: str) -> bool:
        """Pretend ``image`` was pulled: there is nothing newer afterwards."""
        with self._lock:
            return self._pending.pop(normalize_image_name(image), None) is not None

    def check_image(self, image: str) -> VersionInfo:
        """Update check against the fixture state, used instead of real registries."""
        key = normalize_image_name(image)
        ref = parse_image_ref(key)
        local = self.local_image(key)
        current_digest = local.digest_for(key) if local else None
        newer = self.pending_update(key)

        return VersionInfo(
            image=key,
            current_version=ref.tag if is_semver_like(ref.tag) else None,
            latest_version=newer or ref.tag,
            current_digest=current_digest,
            latest_digest=_fake_digest("manifest", key, newer) if newer else current_digest,
            update_available=newer is not None,
            source_url=extract_source_url(local.labels if local else None, key),
        )


class DemoComposeDriver(ComposeDriver):
    """Compose driver that edits the :class:`DemoGateway` state instead of running processes."""

    def __init__(self, gateway: DemoGateway):
        super().__init__(gateway)

    def _members(self, project: str, service: Optional[str] = None) -> List[ContainerSnapshot]:
        return [c for c in self.gateway.project_snapshot(project) if service is None or c.service == service]

    def _finish(self, project: str, lines: List[str], on_output: Optional[OutputCallback]) -> ComposeResult:
        for line in lines:
            if on_output:
                on_output(f"{line}\n")
        self.logger.debug("Demo compose run for %s: %d lines", project, len(lines))
        return ComposeResult(True, "".join(f"{line}\n" for line in lines), None, 0)

    def _missing(self, project: str) -> ComposeResult:
        return ComposeResult(False, "", f"Project {project} not found", 1)

    def pull(self, project: str, service: Optional[str] = None, on_output: Optional[OutputCallback] = None) -> ComposeResult:
        members = self._members(project, service)
        if not members:
            return self._missing(project)

        lines = [f"[demo] docker compose -p {project} pull{' ' + service if service else ''}"]
        for container in members:
            lines.append(f"Pulling {container.service} ({container.image})...")
            if self.gateway.mark_pulled(container.image):
                lines.append(f"Status: Downloaded newer image for {container.image}")
            else:
                lines.append(f"Status: Image is up to date for {container.image}")
        return self._finish(project, lines, on_output)

    def up(
        self,
        project: str,
        service: Optional[str] = None,
        build: bool = False,
        pull: bool = False,
        on_output: Optional[OutputCallback] = None,
    ) -> ComposeResult:
        members = self._members(project, service)
        if not members:
            return self._missing(project)

        lines = [f"[demo] docker compose -p {project} up -d{' ' + service if service else ''}"]
        if pull:
            for container in members:
                self.gateway.mark_pulled(container.image)
        for container in members:
            self.gateway.start_container(container.id)
            lines.append(f" Container {container.name}  Started")
        return self._finish(project, lines, on_output)

    def down(
        self,
        project: str,
        volumes: bool = False,
        remove_orphans: bool = False,
        on_output: Optional[OutputCallback] = None,
    ) -> ComposeResult:
        members = self._members(project)
        if not members:
            return self._missing(project)

        lines = [f"[demo] docker compose -p {project} down"]
        for container in members:
            self.gateway.stop_container(container.id)
            lines.append(f" Container {container.name}  Stopped")
        return self._finish(project, lines, on_output)
