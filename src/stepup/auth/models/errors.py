"""Exception hierarchy for login and step-up authorization errors.

Provides specific exception types for each failure mode so callers can
decide between re-entering an OTP, restarting a challenge or forcing a
fresh login.
"""

from __future__ import annotations

from typing import Any


class StepUpAuthError(Exception):
    """Base exception for all authentication and step-up errors."""

    pass


class HTTPFailure(StepUpAuthError):
    """Base for errors raised from an unsuccessful HTTP exchange.

    Keeps the status code and the raw body (parsed JSON when the provider
    sent JSON, text otherwise) for diagnostics. ``status`` is None when the
    request never produced a response.
    """

    def __init__(self, message: str, status: int | None = None, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


class CryptoUnavailableError(StepUpAuthError):
    """Raised when no cryptographically secure random source is available."""

    pass


class AuthorizationError(StepUpAuthError):
    """Raised when a login round-trip cannot be completed."""

    pass


class FlowStateError(AuthorizationError):
    """Raised when the pending flow exists but its PKCE verifier is gone."""

    pass


class ChallengeError(StepUpAuthError):
    """Base exception for the OTP challenge sub-flow."""

    pass


class ChallengeInitiationError(ChallengeError, HTTPFailure):
    """Raised when the direct-mode authorize request is rejected."""

    pass


class ChallengeNormalizationError(ChallengeError):
    """Raised when a challenge response lacks a flow or authenticator id.

    Terminal for the attempt: the user has to start a new challenge.
    """

    pass


class OtpVerificationError(ChallengeError, HTTPFailure):
    """Raised when the provider rejects a submitted OTP.

    Recoverable: the same challenge context may be used to submit again.
    """

    pass


class TokenError(StepUpAuthError):
    """Raised when token endpoint operations fail."""

    pass


class TokenExchangeError(TokenError, HTTPFailure):
    """Raised when an authorization code cannot be exchanged for tokens."""

    pass


class RefreshError(TokenError, HTTPFailure):
    """Raised when a refresh token is rejected. The user must log in again."""

    pass


class NotAuthenticatedError(StepUpAuthError):
    """Raised when an authorized call is attempted without a token set."""

    pass


class UserInfoError(HTTPFailure):
    """Raised when the user-info endpoint rejects the access token."""

    pass
