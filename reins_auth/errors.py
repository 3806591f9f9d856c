"""Error types for the provider auth layer.

Every failure raised by this package is an ``AuthError``. Subclasses narrow
the failure category so callers can branch on it, but catching ``AuthError``
is always enough. The underlying exception (if any) is chained through
``__cause__`` and also exposed as ``cause``.
"""

from __future__ import annotations

from pathlib import Path


class AuthError(Exception):
    """Base class for all credential and authentication failures."""

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause


class CredentialValidationError(AuthError):
    """Input rejected before anything was stored (empty provider, bad key, unsupported mode)."""


class CredentialEncryptionError(AuthError):
    """Key derivation or encryption failed."""


class CredentialDecryptionError(AuthError):
    """Ciphertext could not be authenticated or decoded (wrong secret, tampering, bad shape)."""


class CredentialPersistenceError(AuthError):
    """Reading or writing the credential store file failed."""

    def __init__(self, message: str, path: Path | str, cause: BaseException | None = None):
        super().__init__(message, cause)
        self.path = Path(path)


class OAuthProtocolError(AuthError):
    """OAuth exchange failed (missing code, listener failure, token endpoint error, timeout)."""


class OAuthStateMismatchError(OAuthProtocolError):
    """Callback ``state`` did not match the value issued at initiate time."""


class CredentialRefreshError(AuthError):
    """Token refresh was impossible or rejected; the provider must be re-authenticated."""
