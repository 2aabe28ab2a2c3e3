import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from .references import ImageReference, format_image_ref, normalize_image_name
from .registry import ManifestDescriptor

SEMVER_PATTERN = re.compile(r"^v?\d+(\.\d+)*(-[0-9A-Za-z.-]+)?(\+[0-9A-Za-z.-]+)?$")

STATUS_CHECKED = "checked"
STATUS_UNKNOWN = "unknown"

VERSION_LABELS = (
    "org.opencontainers.image.version",
    "org.label-schema.version",
    "io.hass.version",
    "version",
)

SOURCE_LABELS = (
    "org.opencontainers.image.source",
    "org.label-schema.vcs-url",
    "org.opencontainers.image.url",
    "org.label-schema.url",
)

Identifier = Union[int, str]


@dataclass(frozen=True)
class Version:
    text: str
    release: Tuple[int, ...]
    prerelease: Tuple[Identifier, ...] = ()

    @property
    def prefixed(self) -> bool:
        return self.text[:1] in ("v", "V")

    @property
    def sort_key(self) -> tuple:
        # Trailing zeros are dropped so 1.2 and 1.2.0 compare equal.
        release = list(self.release)
        while release and release[-1] == 0:
            release.pop()
        pre = tuple((0, part, "") if isinstance(part, int) else (1, 0, part) for part in self.prerelease)
        return (tuple(release), 0 if self.prerelease else 1, pre)


def is_semver_like(tag: Optional[str]) -> bool:
    return bool(tag) and SEMVER_PATTERN.match(tag) is not None


def parse_version(tag: Optional[str]) -> Optional[Version]:
    """Parse a tag such as ``1``, ``v1.2`` or ``1.2.3-rc.1+build``; ``None`` if it is not semver-like."""
    if not is_semver_like(tag):
        return None

    body = tag[1:] if tag[0] in ("v", "V") else tag
    body = body.split("+", 1)[0]
    core, _, pre = body.partition("-")

    release = tuple(int(part) for part in core.split("."))
    prerelease: Tuple[Identifier, ...] = ()
    if pre:
        prerelease = tuple(int(part) if part.isdigit() else part for part in pre.split("."))
    return Version(tag, release, prerelease)


def compare_versions(left: str, right: str) -> int:
    """Order two semver-like tags: -1, 0 or 1. Raises ValueError for non-semver input."""
    a, b = parse_version(left), parse_version(right)
    if a is None or b is None:
        raise ValueError(f"Not a semantic version: {left if a is None else right}")
    if a.sort_key == b.sort_key:
        return 0
    return 1 if a.sort_key > b.sort_key else -1


def _preference(version: Version) -> tuple:
    return (version.sort_key, len(version.release), not version.prefixed)


def find_best_version(tags: Iterable[str]) -> Optional[str]:
    """Return the highest semver-like tag, ``None`` when there is none.

    Among tags of equal version the most explicit one wins (``1.2.0`` over
    ``1.2``), then the one without a ``v`` prefix, then the smaller text so
    the result never depends on tag order.
    """
    best: Optional[Version] = None
    for tag in tags:
        version = parse_version(tag)
        if version is None:
            continue
        if best is None:
            best = version
            continue
        candidate, current = _preference(version), _preference(best)
        if candidate > current or (candidate == current and version.text < best.text):
            best = version
    return best.text if best else None


def _first_label(labels: Optional[Mapping[str, str]], keys: Tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = (labels or {}).get(key)
        if value:
            return value
    return None


def extract_version_label(labels: Optional[Mapping[str, str]]) -> Optional[str]:
    return _first_label(labels, VERSION_LABELS)


def extract_source_url(labels: Optional[Mapping[str, str]], image: Optional[str] = None) -> Optional[str]:
    """Link to the image's source: a label when present, else derived from the registry."""
    url = _first_label(labels, SOURCE_LABELS)
    if url:
        if url.startswith("git@github.com:"):
            url = "https://github.com/" + url[len("git@github.com:"):]
        return url[:-4] if url.endswith(".git") else url

    if not image:
        return None

    name = normalize_image_name(image).split("@", 1)[0]
    if ":" in name.rsplit("/", 1)[-1]:
        name = name.rsplit(":", 1)[0]
    if name.startswith("ghcr.io/"):
        parts = name.split("/")
        if len(parts) >= 3:
            return f"https://github.com/{parts[1]}/{parts[2]}"
        return None
    if "/" not in name:
        return f"https://hub.docker.com/_/{name}"
    if "." not in name.split("/", 1)[0]:
        return f"https://hub.docker.com/r/{name}"
    return None


@dataclass(frozen=True)
class VersionInfo:
    image: str
    current_version: Optional[str] = None
    latest_version: Optional[str] = None
    current_digest: Optional[str] = None
    latest_digest: Optional[str] = None
    update_available: bool = False
    source_url: Optional[str] = None
    checked_at: float = field(default_factory=time.time)
    status: str = STATUS_CHECKED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "image": self.image,
            "currentVersion": self.current_version,
            "latestVersion": self.latest_version,
            "currentDigest": self.current_digest,
            "latestDigest": self.latest_digest,
            "updateAvailable": self.update_available,
            "sourceUrl": self.source_url,
            "checkedAt": self.checked_at,
            "status": self.status,
        }


def pinned_version_info(ref: ImageReference, source_url: Optional[str] = None) -> VersionInfo:
    """A digest-pinned reference never has an update: it is locked on purpose."""
    return VersionInfo(
        image=normalize_image_name(format_image_ref(ref)),
        current_version=ref.tag if is_semver_like(ref.tag) else None,
        current_digest=ref.digest,
        latest_digest=ref.digest,
        update_available=False,
        source_url=source_url,
        status=STATUS_CHECKED,
    )


def resolve_version(
    ref: ImageReference,
    tags: Iterable[str],
    current_digest: Optional[str],
    descriptor: Optional[ManifestDescriptor],
    local_version: Optional[str] = None,
    source_url: Optional[str] = None,
) -> VersionInfo:
    """Decide whether ``ref`` has an update.

    Two independent signals: the registry digest for the current tag no
    longer matches the local one (a floating tag was re-pointed), or a
    strictly greater semver tag exists while the current tag is itself
    semver-like.
    """
    update_available = False
    if current_digest and descriptor is not None and not descriptor.matches(current_digest):
        update_available = True

    best = find_best_version(tags)
    current_tag = ref.tag if is_semver_like(ref.tag) else None

    latest_version: Optional[str] = None
    if best is not None:
        latest_version = best
        if current_tag is not None:
            if compare_versions(best, current_tag) > 0:
                update_available = True
            else:
                latest_version = current_tag

    return VersionInfo(
        image=normalize_image_name(format_image_ref(ref)),
        current_version=current_tag or local_version,
        latest_version=latest_version,
        current_digest=current_digest,
        latest_digest=descriptor.digest if descriptor else None,
        update_available=update_available,
        source_url=source_url,
        status=STATUS_CHECKED if descriptor is not None else STATUS_UNKNOWN,
    )
