"""Identity provider configuration.

Endpoint values are deployment configuration. Defaults match a local WSO2
Identity Server listening on port 9444 and the demo client served from
``http://localhost:5173``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_BASE_URL = "https://localhost:9444"

_LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


class ProviderConfig(BaseModel):
    """OIDC endpoints and the two client identities used by the demo."""

    authorization_endpoint: str = f"{DEFAULT_BASE_URL}/oauth2/authorize"
    token_endpoint: str = f"{DEFAULT_BASE_URL}/oauth2/token"
    userinfo_endpoint: str = f"{DEFAULT_BASE_URL}/oauth2/userinfo"
    end_session_endpoint: str = f"{DEFAULT_BASE_URL}/oidc/logout"

    # Default OTP submission URL when the challenge doesn't advertise one
    authn_endpoint: str | None = None

    # Primary login identity and the identity used for step-up
    client_id: str = "AqB3RGyqMl0xW342z9laa1wy3YEa"
    step_up_client_id: str = "E0bqe3TldZqJ3befDzav0OQkPtIa"

    redirect_uri: str = "http://localhost:5173"
    scope: str = "openid profile email"
    step_up_scope: str = "openid internal_login profile"
    step_up_state: str = "logpg"

    timeout: float = Field(default=30.0, gt=0)
    # Local identity servers usually run with self-signed certificates
    verify_tls: bool = True

    @field_validator(
        "authorization_endpoint",
        "token_endpoint",
        "userinfo_endpoint",
        "end_session_endpoint",
        "authn_endpoint",
    )
    @classmethod
    def validate_endpoint(cls, v: str | None) -> str | None:
        if v is None:
            return v
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Endpoint must be an absolute http(s) URL: {v}")
        return v

    @field_validator("redirect_uri")
    @classmethod
    def validate_redirect_uri(cls, v: str) -> str:
        """Redirect URI must use HTTPS or a loopback host."""
        parsed = urlparse(v)
        if parsed.scheme == "https" and parsed.netloc:
            return v
        if parsed.scheme == "http" and parsed.hostname in _LOOPBACK_HOSTS:
            return v
        raise ValueError(f"Redirect URI must use HTTPS or localhost: {v}")

    @field_validator("scope", "step_up_scope", "client_id", "step_up_client_id")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Value must not be empty")
        return v

    @model_validator(mode="after")
    def default_authn_endpoint(self) -> ProviderConfig:
        if self.authn_endpoint is None:
            parsed = urlparse(self.authorization_endpoint)
            self.authn_endpoint = f"{parsed.scheme}://{parsed.netloc}/oauth2/authn"
        return self

    @classmethod
    def from_env(
        cls, prefix: str = "STEPUP_", environ: Mapping[str, str] | None = None
    ) -> ProviderConfig:
        """Build a config from ``<prefix><FIELD>`` environment variables.

        Unset variables keep their defaults, e.g. ``STEPUP_CLIENT_ID``
        overrides ``client_id``.
        """
        environ = os.environ if environ is None else environ
        overrides = {
            name: environ[f"{prefix}{name.upper()}"]
            for name in cls.model_fields
            if f"{prefix}{name.upper()}" in environ
        }
        return cls.model_validate(overrides)
