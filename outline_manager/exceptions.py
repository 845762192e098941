"""Custom exception hierarchy for the Outline server manager."""


class OutlineManagerError(Exception):
    """Base exception for all manager errors."""


class ConfigError(OutlineManagerError):
    """Invalid or missing configuration."""


class CloudApiError(OutlineManagerError):
    """Error returned by a cloud provider API (DigitalOcean, GCP, Lightsail)."""

    def __init__(self, message: str, status_code: int | None = None, response_body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class CloudNetworkError(CloudApiError):
    """No response was received from the cloud provider (network or TLS failure)."""


class InvalidTokenError(OutlineManagerError):
    """A provider credential contains characters that cannot be embedded in user data."""


class ServerInstallFailedError(OutlineManagerError):
    """The remote install script reported an error, or installation timed out."""

    def __init__(self, reason: str = "Server installation failed"):
        super().__init__(reason)
        self.reason = reason


class DeletedServerError(OutlineManagerError):
    """The server was deleted while waiting for installation."""

    def __init__(self, message: str = "Server was deleted"):
        super().__init__(message)


class ServerNotReadyError(OutlineManagerError):
    """The management API was requested before installation succeeded."""


class ServerApiError(OutlineManagerError):
    """Error communicating with an installed server's management API."""

    def __init__(self, message: str, status_code: int | None = None, response_body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    @property
    def is_network_error(self) -> bool:
        """True if no response was received, i.e. the request never reached the server."""
        return self.status_code is None
