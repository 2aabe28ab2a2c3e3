import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..errors import UpdateCheckError
from .references import normalize_image_name
from .versions import VersionInfo

Checker = Callable[[str], VersionInfo]


@dataclass(frozen=True)
class UpdateCacheEntry:
    info: VersionInfo
    stored_at: float = field(default_factory=time.monotonic)

    @property
    def age(self) -> float:
        return time.monotonic() - self.stored_at


class UpdateCache:
    """Image key -> latest known :class:`VersionInfo`.

    ``refresh`` runs at most one check per key at a time: the first caller
    runs the checker, concurrent callers for the same key wait on its future
    and get the same result or the same error. A failed check never replaces
    an entry that is already stored, and a check that was running when its
    key got invalidated is not stored either. Nothing expires on a timer;
    callers use :meth:`entry` to judge staleness and :meth:`invalidate` after
    a pull.
    """

    def __init__(self, checker: Checker):
        self.logger = logging.getLogger(__name__)
        self.checker = checker
        self._entries: Dict[str, UpdateCacheEntry] = {}
        self._inflight: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._checks = 0
        self._failures = 0
        self._generations: Dict[str, int] = {}
        self._epoch = 0

    @staticmethod
    def key(image: str) -> str:
        return normalize_image_name(image)

    def entry(self, image: str) -> Optional[UpdateCacheEntry]:
        with self._lock:
            return self._entries.get(self.key(image))

    def get(self, image: str) -> Optional[VersionInfo]:
        entry = self.entry(image)
        return entry.info if entry else None

    def get_all(self) -> List[VersionInfo]:
        with self._lock:
            entries = list(self._entries.values())
        return [entry.info for entry in entries]

    def get_many(self, images: Iterable[str]) -> List[VersionInfo]:
        keys = [self.key(image) for image in images]
        with self._lock:
            entries = [self._entries.get(key) for key in keys]
        return [entry.info for entry in entries if entry]

    def refresh(self, image: str) -> VersionInfo:
        key = self.key(image)

        with self._lock:
            future = self._inflight.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._inflight[key] = future
                generation = self._generation(key)

        if not leader:
            self.logger.debug("Joining in-flight update check for %s", key)
            return future.result()

        try:
            info = self.checker(key)
        except Exception as exc:
            error = exc if isinstance(exc, UpdateCheckError) else UpdateCheckError(key, exc)
            with self._lock:
                self._failures += 1
                self._finish(key, future)
            self.logger.warning("%s", error)
            future.set_exception(error)
            if error is exc:
                raise
            raise error from exc

        with self._lock:
            self._checks += 1
            self._finish(key, future)
            stale = self._generation(key) != generation
            if not stale:
                self._entries[key] = UpdateCacheEntry(info)
        if stale:
            self.logger.debug("Discarding update check for %s, invalidated while it ran", key)
        future.set_result(info)
        return info

    def _generation(self, key: str) -> Tuple[int, int]:
        return self._epoch, self._generations.get(key, 0)

    def _finish(self, key: str, future: Future) -> None:
        if self._inflight.get(key) is future:
            del self._inflight[key]

    def invalidate(self, images: Optional[Iterable[str]] = None) -> int:
        """Drop the given images, or everything when ``images`` is None. Returns how many went.

        Checks already running for those images finish for their callers but
        do not store their result.
        """
        with self._lock:
            if images is None:
                removed = len(self._entries)
                self._entries.clear()
                self._inflight.clear()
                self._epoch += 1
                return removed

            removed = 0
            for image in images:
                key = self.key(image)
                self._generations[key] = self._generations.get(key, 0) + 1
                self._inflight.pop(key, None)
                if self._entries.pop(key, None) is not None:
                    removed += 1
            return removed

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "inflight": len(self._inflight),
                "checks": self._checks,
                "failures": self._failures,
            }
