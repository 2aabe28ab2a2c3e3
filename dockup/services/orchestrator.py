"""Sequential update runs over compose projects and containers.

A run walks its targets one at a time and reports what it does as a stream
of events::

    start -> progress(checking) -> progress(pulling) [-> progress(restarting)] -> complete | error
    ...
    done

A failing target never stops the run, and every run ends with ``done``.
Closing the stream ends the run, but a target whose pull was already
announced is still pulled and restarted.
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Generator, Iterable, Iterator, List, Optional, Tuple, Union

from .cache import UpdateCache
from .compose import ComposeDriver
from .docker import ContainerSnapshot, EngineGateway
from .references import normalize_image_name

KIND_PROJECT = "project"
KIND_CONTAINER = "container"

STEP_CHECKING = "checking"
STEP_PULLING = "pulling"
STEP_RESTARTING = "restarting"


@dataclass(frozen=True)
class UpdateTarget:
    kind: str
    name: str
    was_running: bool = False
    images: Tuple[str, ...] = ()
    project: Optional[str] = None
    service: Optional[str] = None


@dataclass(frozen=True)
class UpdateSummary:
    updated: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"updated": self.updated, "failed": self.failed}


@dataclass(frozen=True)
class StartEvent:
    type: ClassVar[str] = "start"
    target: str
    total: int
    current: int

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "target": self.target, "total": self.total, "current": self.current}


@dataclass(frozen=True)
class ProgressEvent:
    type: ClassVar[str] = "progress"
    target: str
    step: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "target": self.target, "step": self.step}


@dataclass(frozen=True)
class CompleteEvent:
    type: ClassVar[str] = "complete"
    target: str
    restarted: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "target": self.target, "restarted": self.restarted}


@dataclass(frozen=True)
class ErrorEvent:
    type: ClassVar[str] = "error"
    target: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "target": self.target, "message": self.message}


@dataclass(frozen=True)
class DoneEvent:
    type: ClassVar[str] = "done"
    summary: UpdateSummary

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "summary": self.summary.to_dict()}


UpdateEvent = Union[StartEvent, ProgressEvent, CompleteEvent, ErrorEvent, DoneEvent]
TargetOutcome = Union[CompleteEvent, ErrorEvent]


def _images_of(containers: Iterable[ContainerSnapshot]) -> Tuple[str, ...]:
    return tuple(sorted({normalize_image_name(c.image) for c in containers if c.image}))


class UpdateOrchestrator:
    def __init__(self, gateway: EngineGateway, compose: ComposeDriver, cache: UpdateCache):
        self.logger = logging.getLogger(__name__)
        self.gateway = gateway
        self.compose = compose
        self.cache = cache

    # -- target enumeration --

    def targets_with_updates(self) -> List[UpdateTarget]:
        """One project target per compose project with a cached update for any of its images."""
        projects: Dict[str, List[ContainerSnapshot]] = {}
        flagged = set()

        for container in self.gateway.list_containers():
            if container.project:
                projects.setdefault(container.project, []).append(container)

            info = self.cache.get(container.image) if container.image else None
            if info is None or not info.update_available:
                continue
            if not container.compose_managed:
                self.logger.warning(
                    "Skipping %s: update available for %s but the container is not managed by compose",
                    container.name,
                    container.image,
                )
                continue
            flagged.add(container.project)

        return [
            UpdateTarget(
                kind=KIND_PROJECT,
                name=project,
                was_running=any(c.running for c in projects[project]),
                images=_images_of(projects[project]),
                project=project,
            )
            for project in sorted(flagged)
        ]

    def targets_for(self, projects: Iterable[str] = (), containers: Iterable[str] = ()) -> List[UpdateTarget]:
        """Targets for an explicit selection, in the order given.

        Names that match nothing are kept; the run reports them as failed.
        """
        snapshot = self.gateway.list_containers()
        targets: List[UpdateTarget] = []

        for name in filter(None, projects):
            members = [c for c in snapshot if c.project == name]
            targets.append(
                UpdateTarget(
                    kind=KIND_PROJECT,
                    name=name,
                    was_running=any(c.running for c in members),
                    images=_images_of(members),
                    project=name if members else None,
                )
            )

        for name in filter(None, containers):
            match = next((c for c in snapshot if name in (c.name, c.id) or c.id.startswith(name)), None)
            targets.append(
                UpdateTarget(
                    kind=KIND_CONTAINER,
                    name=match.name if match else name,
                    was_running=match.running if match else False,
                    images=_images_of([match]) if match else (),
                    project=match.project if match else None,
                    service=match.service if match else None,
                )
            )

        return targets

    # -- execution --

    def _live_containers(self, target: UpdateTarget) -> List[ContainerSnapshot]:
        if target.kind == KIND_PROJECT:
            return self.gateway.project_snapshot(target.name)
        container = self.gateway.get_container(target.name)
        return [container] if container else []

    def _update_target(self, target: UpdateTarget) -> Generator[ProgressEvent, None, TargetOutcome]:
        yield ProgressEvent(target.name, STEP_CHECKING)
        live = self._live_containers(target)
        if not live:
            return ErrorEvent(target.name, f"{target.kind.capitalize()} {target.name} not found")

        head = live[0]
        if target.kind == KIND_CONTAINER and not head.compose_managed:
            return ErrorEvent(target.name, f"Container {target.name} is not managed by compose")

        project = head.project if target.kind == KIND_CONTAINER else target.name
        service = head.service if target.kind == KIND_CONTAINER else None
        was_running = any(c.running for c in live)
        images = _images_of(live) or target.images

        try:
            yield ProgressEvent(target.name, STEP_PULLING)
        except GeneratorExit:
            self._finish_detached(target.name, project, service, images, was_running, pulled=False)
            raise
        result = self.compose.pull(project, service)
        if not result.success:
            return ErrorEvent(target.name, result.error or "Failed to pull images")

        self.cache.invalidate(images)

        restarted = False
        if was_running:
            try:
                yield ProgressEvent(target.name, STEP_RESTARTING)
            except GeneratorExit:
                self._finish_detached(target.name, project, service, images, was_running, pulled=True)
                raise
            result = self.compose.up(project, service)
            if not result.success:
                return ErrorEvent(target.name, result.error or "Failed to restart")
            restarted = True

        return CompleteEvent(target.name, restarted)

    def _finish_detached(
        self,
        name: str,
        project: str,
        service: Optional[str],
        images: Tuple[str, ...],
        was_running: bool,
        pulled: bool,
    ) -> None:
        """Complete a target whose event stream was closed once its pull step had begun."""
        self.logger.warning("Update stream closed while updating %s, finishing it without a listener", name)
        if not pulled:
            result = self.compose.pull(project, service)
            if not result.success:
                self.logger.error("Update of %s failed: %s", name, result.error)
                return
            self.cache.invalidate(images)
        if was_running:
            result = self.compose.up(project, service)
            if not result.success:
                self.logger.error("Update of %s failed: %s", name, result.error)
                return
        self.logger.info("Updated %s (restarted=%s)", name, was_running)

    def run(self, targets: List[UpdateTarget], cancel: Optional[threading.Event] = None) -> Iterator[UpdateEvent]:
        total = len(targets)
        updated = failed = 0

        for current, target in enumerate(targets, start=1):
            if cancel is not None and cancel.is_set():
                self.logger.info("Update run cancelled before %s (%d/%d)", target.name, current, total)
                break

            yield StartEvent(target.name, total, current)
            try:
                outcome = yield from self._update_target(target)
            except Exception as exc:
                self.logger.exception("Unexpected failure while updating %s", target.name)
                outcome = ErrorEvent(target.name, str(exc) or exc.__class__.__name__)

            if isinstance(outcome, CompleteEvent):
                updated += 1
                self.logger.info("Updated %s (restarted=%s)", target.name, outcome.restarted)
            else:
                failed += 1
                self.logger.error("Update of %s failed: %s", target.name, outcome.message)
            yield outcome

        yield DoneEvent(UpdateSummary(updated, failed))

    def _guarded(self, enumerate_targets, cancel: Optional[threading.Event]) -> Iterator[UpdateEvent]:
        try:
            targets = enumerate_targets()
        except Exception as exc:
            self.logger.exception("Unable to determine update targets")
            yield ErrorEvent("", f"Failed to start update: {exc}")
            yield DoneEvent(UpdateSummary())
            return
        yield from self.run(targets, cancel)

    def update_all(self, cancel: Optional[threading.Event] = None) -> Iterator[UpdateEvent]:
        return self._guarded(self.targets_with_updates, cancel)

    def update_named(
        self,
        projects: Iterable[str] = (),
        containers: Iterable[str] = (),
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[UpdateEvent]:
        projects, containers = list(projects), list(containers)
        return self._guarded(lambda: self.targets_for(projects, containers), cancel)


class RunRegistry:
    """Run id -> cancel event for runs in progress."""

    def __init__(self):
        self._runs: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def start(self) -> Tuple[str, threading.Event]:
        run_id = uuid.uuid4().hex
        cancel = threading.Event()
        with self._lock:
            self._runs[run_id] = cancel
        return run_id, cancel

    def cancel(self, run_id: str) -> bool:
        with self._lock:
            cancel = self._runs.get(run_id)
        if cancel is None:
            return False
        cancel.set()
        return True

    def finish(self, run_id: str) -> None:
        with self._lock:
            self._runs.pop(run_id, None)

    def active(self) -> List[str]:
        with self._lock:
            return list(self._runs)
