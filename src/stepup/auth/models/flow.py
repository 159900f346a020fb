"""Authorization flow models.

Contains the redirect-mode login request, the direct-mode step-up request
and the parameters read back from a redirect landing.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

# Query parameters the provider appends to the redirect URI
REDIRECT_PARAMS = ("code", "state", "session_state")


@dataclass(frozen=True)
class AuthorizationRequest:
    """Authorization request parameters for the browser redirect."""

    authorization_endpoint: str
    client_id: str
    redirect_uri: str
    scope: str
    state: str
    code_challenge: str
    code_challenge_method: str = "S256"

    def build_authorization_url(self) -> str:
        """Build the complete authorization URL."""
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "state": self.state,
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
        }

        return f"{self.authorization_endpoint}?{urlencode(params)}"


@dataclass(frozen=True)
class StepUpAuthorizationRequest:
    """Direct-mode (``response_mode=direct``) authorize request.

    The provider answers with a JSON challenge description instead of a
    redirect, which is what lets the OTP be collected in-page.
    """

    authorization_endpoint: str
    client_id: str
    redirect_uri: str
    scope: str
    state: str
    username: str | None = None

    @property
    def url(self) -> str:
        # The direct-mode endpoint is addressed with a trailing slash
        return f"{self.authorization_endpoint.rstrip('/')}/"

    def to_form_data(self) -> dict[str, str]:
        data = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "state": self.state,
            "scope": self.scope,
            "response_mode": "direct",
        }

        if self.username:
            data["username"] = self.username

        return data


@dataclass(frozen=True)
class RedirectLanding:
    """Parameters read from the URL the provider redirected back to."""

    url: str
    code: str | None = None
    state: str | None = None

    @classmethod
    def from_url(cls, url: str) -> RedirectLanding:
        query_params = parse_qs(urlparse(url).query)

        # Extract single values from query parameter lists
        def get_single_param(key: str) -> str | None:
            values = query_params.get(key, [])
            return values[0] if values else None

        return cls(
            url=url,
            code=get_single_param("code"),
            state=get_single_param("state"),
        )

    def has_code(self) -> bool:
        return bool(self.code) and bool(self.state)

    def clean_url(self) -> str:
        """Return the landing URL with the provider's parameters stripped."""
        parsed = urlparse(self.url)
        remaining = [
            (key, value)
            for key, values in parse_qs(parsed.query, keep_blank_values=True).items()
            if key not in REDIRECT_PARAMS
            for value in values
        ]
        return urlunparse(parsed._replace(query=urlencode(remaining)))
