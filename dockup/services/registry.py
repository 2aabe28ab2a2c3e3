"""Pull-free access to container registries.

Implements the bits of the OCI distribution protocol needed to tell whether an
image has a newer version: scoped bearer-token exchange, tag listing and
manifest / manifest-list digest resolution.
"""

import abc
import base64
import hashlib
import logging
import platform as _platform
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import Settings
from ..errors import RegistryAuthError, RegistryRateLimitError, RegistryUnavailableError
from .credentials import AUTH_BASIC, CredentialResolver, RegistryCredentials
from .references import FAMILY_DOCKERHUB, FAMILY_GHCR, ImageReference

MEDIA_DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
MEDIA_DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
MEDIA_OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MEDIA_OCI_INDEX = "application/vnd.oci.image.index.v1+json"

MANIFEST_LIST_TYPES = {MEDIA_DOCKER_MANIFEST_LIST, MEDIA_OCI_INDEX}
MANIFEST_ACCEPT_HEADER = ", ".join(
    (MEDIA_OCI_INDEX, MEDIA_DOCKER_MANIFEST_LIST, MEDIA_OCI_MANIFEST, MEDIA_DOCKER_MANIFEST)
)

RETRY_STATUSES = (500, 502, 503, 504)
DEFAULT_TOKEN_TTL = 60
TAGS_PAGE_SIZE = 1000

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')

_ARCH_ALIASES = {
    "x86_64": ("amd64", None),
    "amd64": ("amd64", None),
    "aarch64": ("arm64", None),
    "arm64": ("arm64", None),
    "armv7l": ("arm", "v7"),
    "armv6l": ("arm", "v6"),
    "i386": ("386", None),
    "i686": ("386", None),
    "ppc64le": ("ppc64le", None),
    "s390x": ("s390x", None),
}


@dataclass(frozen=True)
class Platform:
    os: str
    architecture: str
    variant: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Platform":
        data = data or {}
        return cls(
            os=data.get("os") or "unknown",
            architecture=data.get("architecture") or "unknown",
            variant=data.get("variant") or None,
        )

    @classmethod
    def parse(cls, text: str) -> "Platform":
        parts = (text or "").strip().split("/")
        os_name = parts[0] if parts and parts[0] else "linux"
        arch = parts[1] if len(parts) > 1 and parts[1] else "amd64"
        variant = parts[2] if len(parts) > 2 and parts[2] else None
        return cls(os_name, arch, variant)

    def matches(self, other: "Platform") -> bool:
        if self.os != other.os or self.architecture != other.architecture:
            return False
        if self.variant and other.variant:
            return self.variant == other.variant
        return True

    def __str__(self) -> str:
        text = f"{self.os}/{self.architecture}"
        if self.variant:
            text += f"/{self.variant}"
        return text


def local_platform() -> Platform:
    # Container images are linux images even when the dashboard runs elsewhere.
    arch, variant = _ARCH_ALIASES.get(_platform.machine().lower(), ("amd64", None))
    return Platform("linux", arch, variant)


@dataclass(frozen=True)
class ManifestDescriptor:
    digest: str
    media_type: str
    size: int
    platforms: Tuple[Platform, ...] = ()
    platform_digest: Optional[str] = None

    @property
    def is_list(self) -> bool:
        return self.media_type in MANIFEST_LIST_TYPES

    def matches(self, digest: Optional[str]) -> bool:
        """True if ``digest`` is either the tag's digest or the selected platform's."""
        if not digest:
            return False
        return digest in (self.digest, self.platform_digest)


def parse_challenge(header: Optional[str]) -> Tuple[Optional[str], Dict[str, str]]:
    """Split a WWW-Authenticate header into its scheme and parameters."""
    if not header:
        return None, {}
    scheme, _, rest = header.strip().partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM.findall(rest))


def build_session(retries: int = 3, backoff: float = 0.5) -> requests.Session:
    """Session that retries transport failures and 5xx responses with backoff.

    4xx responses are returned to the caller untouched, 429 included: a
    Retry-After header does not trigger a retry.
    """
    retry = Retry(
        total=retries,
        connect=retries,
        read=retries,
        status=retries,
        backoff_factor=backoff,
        status_forcelist=RETRY_STATUSES,
        allowed_methods=frozenset({"GET", "HEAD"}),
        raise_on_status=False,
        respect_retry_after_header=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session = requests.Session()
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


class RegistryClient(abc.ABC):
    """What the update checker needs from a registry, whatever its family."""

    family = "generic"

    @abc.abstractmethod
    def list_tags(self, ref: ImageReference) -> List[str]:
        """Return every tag of ``ref.repository``; ``[]`` when the repository does not exist."""

    @abc.abstractmethod
    def resolve_digest(self, ref: ImageReference) -> Optional[ManifestDescriptor]:
        """Return the manifest descriptor for ``ref``; ``None`` when tag or repository is unknown."""


class OciRegistryClient(RegistryClient):
    """Client for any registry speaking the OCI distribution protocol.

    Authentication is challenge driven: a request answered with ``401`` and a
    ``Bearer`` challenge triggers a token exchange scoped to the repository,
    then the request is replayed once. Families with a well-known token
    service set ``token_realm`` so the exchange happens before the first
    request instead.
    """

    token_realm: Optional[str] = None
    token_service: Optional[str] = None

    def __init__(
        self,
        host: str,
        credentials: CredentialResolver,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        platform: Optional[Platform] = None,
        max_tag_pages: int = 10,
    ):
        self.logger = logging.getLogger(__name__)
        self.host = host
        self.credentials = credentials
        self.session = session or build_session()
        self.timeout = timeout
        self.platform = platform or local_platform()
        self.max_tag_pages = max_tag_pages
        self._tokens: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    @property
    def base_url(self) -> str:
        insecure = self.host.startswith(("localhost", "127.0.0.1"))
        return f"{'http' if insecure else 'https'}://{self.host}"

    # -- auth --

    def _cached_token(self, scope: str) -> Optional[str]:
        with self._lock:
            cached = self._tokens.get(scope)
            if cached and cached[1] > time.monotonic():
                return cached[0]
            self._tokens.pop(scope, None)
        return None

    def _fetch_token(
        self,
        realm: str,
        service: Optional[str],
        scope: str,
        creds: Optional[RegistryCredentials],
    ) -> str:
        params = {"scope": scope}
        if service:
            params["service"] = service

        auth = (creds.username, creds.secret) if creds else None
        self.logger.debug("Requesting registry token from %s for %s", realm, scope)
        try:
            response = self.session.get(realm, params=params, auth=auth, timeout=self.timeout)
        except requests.RequestException as exc:
            raise RegistryUnavailableError(f"Token service {realm} unreachable: {exc}") from exc

        if response.status_code in (401, 403):
            raise RegistryAuthError(
                f"Token service {realm} refused access to {scope}", response.status_code
            )
        if response.status_code == 429:
            raise RegistryRateLimitError(f"Token service {realm} rate limited", 429)
        if not response.ok:
            raise RegistryUnavailableError(
                f"Token service {realm} returned {response.status_code}", response.status_code
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise RegistryUnavailableError(f"Token service {realm} returned invalid JSON") from exc

        token = data.get("token") or data.get("access_token")
        if not token:
            raise RegistryAuthError(f"Token service {realm} returned no token")

        try:
            ttl = int(data.get("expires_in") or DEFAULT_TOKEN_TTL)
        except (TypeError, ValueError):
            ttl = DEFAULT_TOKEN_TTL

        with self._lock:
            # Renew a few seconds early so a token never expires mid-request.
            self._tokens[scope] = (token, time.monotonic() + max(ttl - 5, 1))
        return token

    def _preemptive_authorization(self, ref: ImageReference, scope: str) -> Optional[str]:
        if not self.token_realm:
            return None
        token = self._fetch_token(self.token_realm, self.token_service, scope, self.credentials.resolve(ref))
        return f"Bearer {token}"

    def _answer_challenge(self, ref: ImageReference, challenge: Optional[str], scope: str) -> Optional[str]:
        scheme, params = parse_challenge(challenge)
        creds = self.credentials.resolve(ref)

        if scheme == "basic":
            # A bearer credential is only ever exchanged at a token service.
            if not creds or creds.auth_scheme != AUTH_BASIC:
                return None
            encoded = base64.b64encode(f"{creds.username}:{creds.secret}".encode("utf-8")).decode("ascii")
            return f"Basic {encoded}"

        if scheme == "bearer" and params.get("realm"):
            realm = params["realm"]
            token = self._fetch_token(
                realm,
                params.get("service"),
                params.get("scope") or scope,
                creds or self.credentials.resolve_for_realm(realm),
            )
            return f"Bearer {token}"

        return None

    # -- transport --

    def _send(self, url: str, headers: Dict[str, str], params: Optional[Dict[str, Any]]) -> requests.Response:
        try:
            return self.session.get(url, headers=headers, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise RegistryUnavailableError(f"Registry {self.host} unreachable: {exc}") from exc

    def _get(
        self,
        ref: ImageReference,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> requests.Response:
        scope = f"repository:{ref.repository}:pull"
        headers = dict(headers or {})

        token = self._cached_token(scope)
        authorization = f"Bearer {token}" if token else self._preemptive_authorization(ref, scope)
        if authorization:
            headers["Authorization"] = authorization

        response = self._send(url, headers, params)
        if response.status_code == 401:
            authorization = self._answer_challenge(ref, response.headers.get("WWW-Authenticate"), scope)
            if authorization:
                headers = {**headers, "Authorization": authorization}
                response = self._send(url, headers, params)
        return response

    def _raise_for_status(self, response: requests.Response, ref: ImageReference) -> None:
        status = response.status_code
        if response.ok:
            return
        if status in (401, 403):
            raise RegistryAuthError(f"Access denied to {ref.repository} on {self.host}", status)
        if status == 429:
            raise RegistryRateLimitError(f"Rate limited by {self.host}", status)
        raise RegistryUnavailableError(f"{self.host} returned {status} for {ref.repository}", status)

    # -- protocol --

    def _select_manifest(self, manifests: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        for manifest in manifests:
            if self.platform.matches(Platform.from_dict(manifest.get("platform"))):
                return manifest
        return manifests[0] if manifests else None

    def resolve_digest(self, ref: ImageReference) -> Optional[ManifestDescriptor]:
        url = f"{self.base_url}/v2/{ref.repository}/manifests/{ref.reference}"
        response = self._get(ref, url, headers={"Accept": MANIFEST_ACCEPT_HEADER})
        if response.status_code == 404:
            return None
        self._raise_for_status(response, ref)

        body = response.content or b""
        media_type = (response.headers.get("Content-Type") or "").split(";")[0].strip()
        digest = response.headers.get("Docker-Content-Digest") or f"sha256:{hashlib.sha256(body).hexdigest()}"

        data: Dict[str, Any] = {}
        try:
            data = response.json() if body else {}
        except ValueError:
            self.logger.debug("Manifest for %s is not JSON", ref)

        if not media_type:
            media_type = data.get("mediaType") or MEDIA_DOCKER_MANIFEST

        platforms: Tuple[Platform, ...] = ()
        platform_digest: Optional[str] = digest
        if media_type in MANIFEST_LIST_TYPES or "manifests" in data:
            manifests = data.get("manifests") or []
            platforms = tuple(Platform.from_dict(m.get("platform")) for m in manifests)
            selected = self._select_manifest(manifests)
            platform_digest = selected.get("digest") if selected else None

        return ManifestDescriptor(
            digest=digest,
            media_type=media_type,
            size=int(response.headers.get("Content-Length") or len(body)),
            platforms=platforms,
            platform_digest=platform_digest,
        )

    def list_tags(self, ref: ImageReference) -> List[str]:
        tags: List[str] = []
        url: Optional[str] = f"{self.base_url}/v2/{ref.repository}/tags/list"
        params: Optional[Dict[str, Any]] = {"n": TAGS_PAGE_SIZE}
        pages = 0

        while url and pages < self.max_tag_pages:
            pages += 1
            response = self._get(ref, url, headers={"Accept": "application/json"}, params=params)
            if response.status_code == 404:
                return tags
            self._raise_for_status(response, ref)

            try:
                data = response.json() or {}
            except ValueError as exc:
                raise RegistryUnavailableError(f"{self.host} returned an invalid tag list") from exc
            tags.extend(tag for tag in (data.get("tags") or []) if tag)

            next_link = response.links.get("next", {}).get("url")
            url = urljoin(self.base_url, next_link) if next_link else None
            # The next link already carries n and last.
            params = None

        return tags


class DockerHubClient(OciRegistryClient):
    family = FAMILY_DOCKERHUB
    token_realm = "https://auth.docker.io/token"
    token_service = "registry.docker.io"

    def __init__(self, credentials: CredentialResolver, **kwargs):
        super().__init__("registry-1.docker.io", credentials, **kwargs)


class GhcrClient(OciRegistryClient):
    family = FAMILY_GHCR
    token_realm = "https://ghcr.io/token"
    token_service = "ghcr.io"

    def __init__(self, credentials: CredentialResolver, **kwargs):
        super().__init__("ghcr.io", credentials, **kwargs)


class RegistryClientFactory:
    """Builds and memoises one client per registry host."""

    def __init__(
        self,
        settings: Settings,
        credentials: Optional[CredentialResolver] = None,
        session: Optional[requests.Session] = None,
    ):
        self.settings = settings
        self.credentials = credentials or CredentialResolver(settings)
        self.session = session or build_session(settings.registry_retries, settings.registry_backoff)
        self.platform = Platform.parse(settings.registry_platform) if settings.registry_platform else local_platform()
        self._clients: Dict[str, RegistryClient] = {}
        self._lock = threading.Lock()

    def _build(self, ref: ImageReference) -> RegistryClient:
        kwargs = {
            "session": self.session,
            "timeout": self.settings.registry_timeout,
            "platform": self.platform,
            "max_tag_pages": self.settings.registry_max_tag_pages,
        }
        if ref.family == FAMILY_DOCKERHUB:
            return DockerHubClient(self.credentials, **kwargs)
        if ref.family == FAMILY_GHCR:
            return GhcrClient(self.credentials, **kwargs)
        return OciRegistryClient(ref.api_host, self.credentials, **kwargs)

    def client_for(self, ref: ImageReference) -> RegistryClient:
        with self._lock:
            client = self._clients.get(ref.api_host)
            if client is None:
                client = self._build(ref)
                self._clients[ref.api_host] = client
            return client
