class DockupError(Exception):
    """Base class for errors raised by dockup services."""


class RegistryError(DockupError):
    def __init__(self, message: str, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class RegistryAuthError(RegistryError):
    pass


class RegistryRateLimitError(RegistryError):
    pass


class RegistryUnavailableError(RegistryError):
    pass


class UpdateCheckError(DockupError):
    def __init__(self, image: str, cause: Exception):
        super().__init__(f"Update check failed for {image}: {cause}")
        self.image = image
        self.cause = cause


class TopologyError(DockupError):
    """The workload topology could not be read from the container engine."""


class NotFoundError(DockupError, LookupError):
    """A container, image, network or volume the caller named does not exist."""
