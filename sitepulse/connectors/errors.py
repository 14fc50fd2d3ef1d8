"""SitePulse — Platform Error Taxonomy."""


class PlatformError(Exception):
    """Base for every error raised by a platform adapter."""

    def __init__(self, message: str, platform: str = "", status_code: int = 0):
        self.platform = platform
        self.status_code = status_code
        super().__init__(message)


class AuthError(PlatformError):
    """Credential or handshake failure. Fatal for the call that hit it."""


class PlatformAPIError(PlatformError):
    """The platform answered with a non-auth error."""

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class TransientFetchError(PlatformAPIError):
    """Network failure, timeout or 5xx after retries were exhausted."""
