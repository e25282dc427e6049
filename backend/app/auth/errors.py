"""Auth-specific errors."""


class AuthenticationError(Exception):
    """Base class for API key authentication failures.

    The message is safe to show to the client: it never contains the
    secret or its hash.
    """


class MissingAPIKeyError(AuthenticationError):
    """No credential was supplied on a route that requires one (401)."""


class APIKeyRejectedError(AuthenticationError):
    """A credential was supplied but validation refused it (403).

    `reason` carries the validation verdict's reason string.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class APIKeyNotFoundError(LookupError):
    """Raised by admin operations when no key has the given key_id."""

    def __init__(self, key_id: str) -> None:
        super().__init__(f"API key not found: {key_id}")
        self.key_id = key_id


class QuotaExceededError(APIKeyRejectedError):
    """A limit was reached between validation and counting (403)."""
