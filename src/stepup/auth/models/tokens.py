"""Token set and token endpoint request models.

Contains the token set held by the session and the form-encoded request
shapes sent to the token endpoint.
"""

from __future__ import annotations

import base64
import json
import time
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TokenSet(BaseModel):
    """Tokens issued by the provider plus the client identity that got them.

    ``client_id_used`` records which OAuth client produced this set, since
    refresh and further step-up calls must reuse the issuing identity.
    Provider fields the model doesn't name are kept as extras.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    access_token: str
    token_type: str = "Bearer"
    id_token: str | None = None
    refresh_token: str | None = None
    expires_in: int | None = None  # Seconds until expiry
    scope: str | None = None
    client_id_used: str = Field(alias="clientIdUsed")

    # Unix timestamp, stamped when the set is received
    issued_at: float = Field(default_factory=time.time)

    def to_storage(self) -> dict[str, Any]:
        """Serialize for the session store, keeping provider extras."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    @property
    def expires_at(self) -> float | None:
        if self.expires_in is None:
            return None
        return self.issued_at + self.expires_in

    def is_valid(self, buffer_seconds: float = 30.0) -> bool:
        """Check if the access token is still usable with optional buffer.

        Args:
            buffer_seconds: Treat the token as expired this many seconds early
        """
        if not self.access_token:
            return False

        if self.expires_at is None:
            return True  # No expiry means token doesn't expire

        return time.time() < (self.expires_at - buffer_seconds)

    def can_refresh(self) -> bool:
        return bool(self.refresh_token)

    def id_token_claims(self) -> dict[str, Any] | None:
        """Decode the identity token payload without verifying it.

        Only used for hints such as the step-up username; never trust these
        claims for authorization decisions.
        """
        if not self.id_token:
            return None

        parts = self.id_token.split(".")
        if len(parts) < 2:
            return None

        payload = parts[1] + "=" * (-len(parts[1]) % 4)
        try:
            claims = json.loads(base64.urlsafe_b64decode(payload))
        except ValueError:
            return None

        return claims if isinstance(claims, dict) else None


@dataclass(frozen=True)
class TokenRequest:
    """Authorization code grant request (RFC 6749 Section 4.1.3).

    ``code_verifier`` is omitted for codes that were issued through the
    step-up challenge, which never ran a PKCE redirect.
    """

    # Required fields first
    token_endpoint: str
    code: str
    redirect_uri: str
    client_id: str

    # Optional fields with defaults last
    code_verifier: str | None = None  # RFC 7636 PKCE
    grant_type: str = "authorization_code"

    def to_form_data(self) -> dict[str, str]:
        """Convert to form data for application/x-www-form-urlencoded request.

        Token requests must use form encoding, not JSON (RFC 6749 Section 4.1.3).

        Returns:
            Dictionary suitable for httpx data parameter
        """
        data = {
            "grant_type": self.grant_type,
            "client_id": self.client_id,
            "code": self.code,
            "redirect_uri": self.redirect_uri,
        }

        if self.code_verifier:
            data["code_verifier"] = self.code_verifier

        return data


@dataclass(frozen=True)
class RefreshTokenRequest:
    """Refresh token grant request (RFC 6749 Section 6)."""

    token_endpoint: str
    refresh_token: str
    client_id: str
    grant_type: str = "refresh_token"

    def to_form_data(self) -> dict[str, str]:
        """Convert to form data for application/x-www-form-urlencoded request."""
        return {
            "grant_type": self.grant_type,
            "client_id": self.client_id,
            "refresh_token": self.refresh_token,
        }
