from dataclasses import dataclass, field
from typing import Optional

from ..config import Settings
from .references import FAMILY_DOCKERHUB, FAMILY_GHCR, FAMILY_LSCR, ImageReference, registry_family

AUTH_BASIC = "basic"
AUTH_BEARER = "bearer"


@dataclass(frozen=True)
class RegistryCredentials:
    username: str
    secret: str = field(repr=False)
    auth_scheme: str = AUTH_BASIC


class CredentialResolver:
    """Maps a registry host to the credentials configured for it.

    Docker Hub uses a username + access token pair, an optional mirror has its
    own username + password, and GHCR (and lscr.io, which delegates auth to
    GHCR) accepts any username with a personal access token.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def _dockerhub(self) -> Optional[RegistryCredentials]:
        if self.settings.dockerhub_username and self.settings.dockerhub_token:
            return RegistryCredentials(self.settings.dockerhub_username, self.settings.dockerhub_token)
        return None

    def _ghcr(self) -> Optional[RegistryCredentials]:
        if self.settings.ghcr_token:
            return RegistryCredentials("token", self.settings.ghcr_token, AUTH_BEARER)
        return None

    def _mirror(self) -> Optional[RegistryCredentials]:
        if self.settings.mirror_username and self.settings.mirror_password:
            return RegistryCredentials(self.settings.mirror_username, self.settings.mirror_password)
        return None

    def resolve_host(self, registry: str) -> Optional[RegistryCredentials]:
        host = (registry or "").lower()
        family = registry_family(host)

        if family == FAMILY_DOCKERHUB:
            return self._dockerhub()
        if self.settings.mirror_host and host == self.settings.mirror_host:
            return self._mirror()
        if family in (FAMILY_GHCR, FAMILY_LSCR):
            return self._ghcr()
        return None

    def resolve(self, ref: ImageReference) -> Optional[RegistryCredentials]:
        return self.resolve_host(ref.registry)

    def resolve_for_realm(self, realm: str) -> Optional[RegistryCredentials]:
        """Credentials for a token service URL taken from a WWW-Authenticate challenge."""
        realm = (realm or "").lower()
        if "docker.io" in realm or "docker.com" in realm:
            return self._dockerhub()
        if "ghcr.io" in realm:
            return self._ghcr()
        if self.settings.mirror_host and self.settings.mirror_host in realm:
            return self._mirror()
        return None
