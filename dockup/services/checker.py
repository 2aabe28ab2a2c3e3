import logging
import threading
import time
from typing import Dict, Iterable, List, Optional, Tuple

from ..errors import UpdateCheckError
from .cache import UpdateCache
from .docker import EngineGateway, LocalImage
from .references import format_image_ref, normalize_image_name, parse_image_ref
from .registry import RegistryClientFactory
from .versions import (
    VersionInfo,
    extract_source_url,
    extract_version_label,
    pinned_version_info,
    resolve_version,
)


class UpdateChecker:
    """Callable that checks one image against its registry.

    Used as the checker of an :class:`UpdateCache`: it is handed a
    normalised image key and returns a fresh :class:`VersionInfo`.
    """

    def __init__(self, gateway: EngineGateway, clients: RegistryClientFactory):
        self.logger = logging.getLogger(__name__)
        self.gateway = gateway
        self.clients = clients

    def _local_image(self, image: str) -> Optional[LocalImage]:
        # Prefer the image a container actually runs: the tag may point elsewhere after a pull.
        for container in self.gateway.list_containers():
            if normalize_image_name(container.image) == image and container.image_id:
                local = self.gateway.local_image(container.image_id)
                if local:
                    return local
        return self.gateway.local_image(image)

    def __call__(self, image: str) -> VersionInfo:
        ref = parse_image_ref(image)
        local = self._local_image(image)
        labels = local.labels if local else {}
        source_url = extract_source_url(labels, image)

        if ref.digest:
            return pinned_version_info(ref, source_url)

        current_digest = local.digest_for(image) if local else None
        client = self.clients.client_for(ref)

        started = time.monotonic()
        descriptor = client.resolve_digest(ref)
        tags = client.list_tags(ref)
        self.logger.debug(
            "Checked %s on %s in %.2fs (%d tags)", format_image_ref(ref), ref.api_host, time.monotonic() - started, len(tags)
        )

        return resolve_version(
            ref,
            tags,
            current_digest,
            descriptor,
            local_version=extract_version_label(labels),
            source_url=source_url,
        )


class UpdateService:
    """Update checks for the dashboard: cached reads, forced refreshes and a background refresher."""

    def __init__(self, cache: UpdateCache, gateway: EngineGateway, max_age: int = 300):
        self.logger = logging.getLogger(__name__)
        self.cache = cache
        self.gateway = gateway
        self.max_age = max_age
        self._refresher_thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def images_in_use(self) -> List[str]:
        images = {normalize_image_name(c.image) for c in self.gateway.list_containers() if c.image}
        return sorted(images)

    def check_images(
        self, images: Optional[Iterable[str]] = None, force: bool = False
    ) -> Tuple[List[VersionInfo], Dict[str, str]]:
        """Return update info for ``images`` (default: every image in use).

        Cached entries are served as they are unless ``force`` is set. A failed
        check shows up in the returned failures and does not affect the
        other images.
        """
        if images is None:
            images = self.images_in_use()

        results: List[VersionInfo] = []
        failures: Dict[str, str] = {}
        seen = set()

        for image in images:
            key = self.cache.key(image)
            if not key or key in seen:
                continue
            seen.add(key)

            cached = None if force else self.cache.get(key)
            if cached is not None:
                results.append(cached)
                continue

            try:
                results.append(self.cache.refresh(key))
            except UpdateCheckError as exc:
                failures[key] = str(exc.cause)

        return results, failures

    def refresh_stale(self) -> int:
        refreshed = 0
        for image in self.images_in_use():
            entry = self.cache.entry(image)
            if entry is not None and entry.age < self.max_age:
                continue
            try:
                self.cache.refresh(image)
                refreshed += 1
            except UpdateCheckError:
                # Already logged by the cache; the previous entry stays.
                continue
        return refreshed

    def start_refresher(self, interval: Optional[int] = None) -> None:
        interval = self.max_age if interval is None else interval
        if interval <= 0:
            self.logger.info("Background update checks disabled")
            return
        if self._refresher_thread and self._refresher_thread.is_alive():
            return

        def _run():
            while not self._stop.is_set():
                try:
                    count = self.refresh_stale()
                    if count:
                        self.logger.info("Refreshed update status for %d images", count)
                except Exception:
                    self.logger.exception("Failed to refresh update cache")
                self._stop.wait(interval)

        thread = threading.Thread(target=_run, name="update_refresher", daemon=True)
        thread.start()
        self._refresher_thread = thread

    def stop_refresher(self) -> None:
        self._stop.set()
