"""Token endpoint services: authorization code exchange and refresh.

Implements RFC 6749 token endpoint interactions with PKCE (RFC 7636). Both
services post form-encoded grants and turn every unsuccessful outcome into
a typed error carrying the status and raw body. Neither retries.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from stepup.auth.models.errors import HTTPFailure, RefreshError, TokenExchangeError
from stepup.auth.models.tokens import RefreshTokenRequest, TokenRequest, TokenSet
from stepup.config import ProviderConfig

logger = logging.getLogger(__name__)

FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}


def _read_body(response: httpx.Response) -> tuple[Any, bool]:
    """Return ``(body, is_json)``, falling back to the response text."""
    try:
        return response.json(), True
    except ValueError:
        return response.text, False


def _build_token_set(
    response: httpx.Response, client_id: str, error_cls: type[HTTPFailure]
) -> TokenSet:
    body, is_json = _read_body(response)

    if not 200 <= response.status_code < 300:
        error_code = body.get("error") if isinstance(body, dict) else body
        logger.error(f"Token request failed ({response.status_code}): {error_code}")
        raise error_cls(
            f"Token request failed ({response.status_code}): {body}",
            status=response.status_code,
            body=body,
        )

    if not is_json or not isinstance(body, dict):
        raise error_cls(
            "Token response was not a JSON object",
            status=response.status_code,
            body=body,
        )

    if "access_token" not in body:
        raise error_cls(
            "Token response missing required access_token",
            status=response.status_code,
            body=body,
        )

    try:
        return TokenSet.model_validate({**body, "clientIdUsed": client_id})
    except ValidationError as e:
        raise error_cls(
            f"Invalid token response format: {e}",
            status=response.status_code,
            body=body,
        ) from e


class _TokenEndpointClient:
    def __init__(
        self,
        config: ProviderConfig,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the token endpoint client.

        Args:
            config: Provider endpoints and client settings
            http_client: Optional shared client. One is created (and owned)
                when omitted.
        """
        self.config = config
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=config.timeout, verify=config.verify_tls
        )

    async def close(self) -> None:
        """Close the HTTP client if this service created it."""
        if self._owns_client:
            await self._http_client.aclose()


class CodeExchangeService(_TokenEndpointClient):
    """Exchanges one-time authorization codes for token sets.

    Performs no deduplication: making sure a code is submitted at most once
    is the caller's job (see ``SessionController``).
    """

    async def exchange(
        self, code: str, verifier: str | None, client_id: str
    ) -> TokenSet:
        """Exchange an authorization code for tokens.

        Args:
            code: Authorization code from the redirect or the OTP flow
            verifier: PKCE verifier of the originating flow. None for codes
                issued by the step-up challenge.
            client_id: Client identity the code was issued to

        Returns:
            TokenSet stamped with ``client_id``

        Raises:
            TokenExchangeError: On non-2xx, non-JSON or network failure
        """
        token_request = TokenRequest(
            token_endpoint=self.config.token_endpoint,
            code=code,
            redirect_uri=self.config.redirect_uri,
            client_id=client_id,
            code_verifier=verifier,
        )
        form_data = token_request.to_form_data()

        # Log request details (without sensitive data)
        logger.debug(
            f"Token request: grant_type={form_data['grant_type']}, "
            f"client_id={client_id}, pkce={'code_verifier' in form_data}"
        )

        try:
            response = await self._http_client.post(
                token_request.token_endpoint,
                data=form_data,
                headers=FORM_HEADERS,
            )
        except httpx.HTTPError as e:
            raise TokenExchangeError(f"HTTP error during token exchange: {e}") from e

        token_set = _build_token_set(response, client_id, TokenExchangeError)
        logger.info(f"Authorization code exchanged for client {client_id}")
        return token_set


class TokenRefreshService(_TokenEndpointClient):
    """Exchanges refresh tokens for new token sets."""

    async def refresh(self, refresh_token: str, client_id: str) -> TokenSet:
        """Refresh tokens using the identity that issued them.

        Raises:
            RefreshError: When the refresh token is rejected or the request
                fails. The user must log in again.
        """
        refresh_request = RefreshTokenRequest(
            token_endpoint=self.config.token_endpoint,
            refresh_token=refresh_token,
            client_id=client_id,
        )

        logger.debug(f"Refresh request: client_id={client_id}")

        try:
            response = await self._http_client.post(
                refresh_request.token_endpoint,
                data=refresh_request.to_form_data(),
                headers=FORM_HEADERS,
            )
        except httpx.HTTPError as e:
            raise RefreshError(f"HTTP error during token refresh: {e}") from e

        token_set = _build_token_set(response, client_id, RefreshError)
        logger.info(f"Tokens refreshed for client {client_id}")
        return token_set
