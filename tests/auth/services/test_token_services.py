"""Tests for authorization code exchange and token refresh.

Covers:
- Form encoding of both grants, with and without a PKCE verifier
- Stamping the issuing client identity onto the token set
- Error bodies surfaced with their HTTP status
- Network failures wrapped in typed errors
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from stepup.auth.models.errors import RefreshError, TokenExchangeError
from stepup.auth.services.tokens import CodeExchangeService, TokenRefreshService
from stepup.config import ProviderConfig

TOKEN_ENDPOINT = "https://idp.example.com/oauth2/token"


def _config() -> ProviderConfig:
    return ProviderConfig(
        authorization_endpoint="https://idp.example.com/oauth2/authorize",
        token_endpoint=TOKEN_ENDPOINT,
        redirect_uri="https://app.example.com/callback",
    )


class TestCodeExchange:
    """Test authorization code to token set exchange."""

    def setup_method(self):
        # Arrange
        self.http_client = AsyncMock()
        self.service = CodeExchangeService(_config(), self.http_client)
        self.code_verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"

    async def test_successful_exchange_with_verifier(self):
        # Arrange
        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_response.json.return_value = {
            "access_token": "access-xyz",
            "token_type": "Bearer",
            "expires_in": 3600,
            "refresh_token": "refresh-abc",
            "id_token": "header.payload.sig",
            "scope": "openid profile",
        }
        self.http_client.post.return_value = mock_response

        # Act
        token_set = await self.service.exchange("code-123", self.code_verifier, "web")

        # Assert
        assert token_set.access_token == "access-xyz"
        assert token_set.refresh_token == "refresh-abc"
        assert token_set.expires_in == 3600
        assert token_set.client_id_used == "web"

        self.http_client.post.assert_awaited_once()
        call_args = self.http_client.post.call_args
        assert call_args[0][0] == TOKEN_ENDPOINT

        form_data = call_args[1]["data"]
        assert form_data == {
            "grant_type": "authorization_code",
            "client_id": "web",
            "code": "code-123",
            "redirect_uri": "https://app.example.com/callback",
            "code_verifier": self.code_verifier,
        }

        headers = call_args[1]["headers"]
        assert headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert headers["Accept"] == "application/json"

    async def test_step_up_code_is_exchanged_without_verifier(self):
        # Arrange
        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_response.json.return_value = {"access_token": "elevated"}
        self.http_client.post.return_value = mock_response

        # Act
        token_set = await self.service.exchange("otp-code", None, "step-up-client")

        # Assert
        form_data = self.http_client.post.call_args[1]["data"]
        assert "code_verifier" not in form_data
        assert form_data["client_id"] == "step-up-client"
        assert token_set.client_id_used == "step-up-client"

    async def test_provider_extras_are_kept(self):
        # Arrange
        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_response.json.return_value = {"access_token": "a", "session_id": "s-1"}
        self.http_client.post.return_value = mock_response

        # Act
        token_set = await self.service.exchange("code", "v" * 43, "web")

        # Assert
        assert token_set.to_storage()["session_id"] == "s-1"
        assert token_set.to_storage()["clientIdUsed"] == "web"

    async def test_invalid_grant_surfaces_status_and_body(self):
        # Arrange
        mock_response = MagicMock()
        mock_response.status_code = 400
        mock_response.json.return_value = {
            "error": "invalid_grant",
            "error_description": "Authorization code expired",
        }
        self.http_client.post.return_value = mock_response

        # Act & Assert
        with pytest.raises(TokenExchangeError) as exc_info:
            await self.service.exchange("expired", self.code_verifier, "web")

        assert exc_info.value.status == 400
        assert exc_info.value.body["error"] == "invalid_grant"

    async def test_non_json_error_body_is_kept_as_text(self):
        # Arrange
        mock_response = MagicMock()
        mock_response.status_code = 502
        mock_response.json.side_effect = ValueError("Invalid JSON")
        mock_response.text = "<html>Bad Gateway</html>"
        self.http_client.post.return_value = mock_response

        # Act & Assert
        with pytest.raises(TokenExchangeError) as exc_info:
            await self.service.exchange("code", self.code_verifier, "web")

        assert exc_info.value.status == 502
        assert exc_info.value.body == "<html>Bad Gateway</html>"

    async def test_success_status_with_non_json_body_raises(self):
        # Arrange
        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_response.json.side_effect = ValueError("Invalid JSON")
        mock_response.text = "ok"
        self.http_client.post.return_value = mock_response

        # Act & Assert
        with pytest.raises(TokenExchangeError, match="not a JSON object"):
            await self.service.exchange("code", self.code_verifier, "web")

    async def test_missing_access_token_raises(self):
        # Arrange
        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_response.json.return_value = {"token_type": "Bearer"}
        self.http_client.post.return_value = mock_response

        # Act & Assert
        with pytest.raises(TokenExchangeError, match="access_token"):
            await self.service.exchange("code", self.code_verifier, "web")

    async def test_network_error_is_wrapped(self):
        # Arrange
        self.http_client.post.side_effect = httpx.ConnectError("Connection refused")

        # Act & Assert
        with pytest.raises(TokenExchangeError, match="HTTP error") as exc_info:
            await self.service.exchange("code", self.code_verifier, "web")

        assert exc_info.value.status is None
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    async def test_shared_client_is_not_closed(self):
        # Act
        await self.service.close()

        # Assert
        self.http_client.aclose.assert_not_awaited()


class TestTokenRefresh:
    """Test refresh token grant handling."""

    def setup_method(self):
        # Arrange
        self.http_client = AsyncMock()
        self.service = TokenRefreshService(_config(), self.http_client)

    async def test_successful_refresh_uses_issuing_client(self):
        # Arrange
        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_response.json.return_value = {
            "access_token": "new-access",
            "refresh_token": "new-refresh",
            "expires_in": 3600,
        }
        self.http_client.post.return_value = mock_response

        # Act
        token_set = await self.service.refresh("old-refresh", "step-up-client")

        # Assert
        assert token_set.access_token == "new-access"
        assert token_set.refresh_token == "new-refresh"
        assert token_set.client_id_used == "step-up-client"

        call_args = self.http_client.post.call_args
        assert call_args[0][0] == TOKEN_ENDPOINT
        assert call_args[1]["data"] == {
            "grant_type": "refresh_token",
            "client_id": "step-up-client",
            "refresh_token": "old-refresh",
        }

    async def test_rejected_refresh_token_raises_refresh_error(self):
        # Arrange
        mock_response = MagicMock()
        mock_response.status_code = 400
        mock_response.json.return_value = {"error": "invalid_grant"}
        self.http_client.post.return_value = mock_response

        # Act & Assert
        with pytest.raises(RefreshError) as exc_info:
            await self.service.refresh("revoked", "web")

        assert exc_info.value.status == 400
        assert exc_info.value.body == {"error": "invalid_grant"}

    async def test_network_error_is_wrapped(self):
        # Arrange
        self.http_client.post.side_effect = httpx.ReadTimeout("timed out")

        # Act & Assert
        with pytest.raises(RefreshError, match="HTTP error"):
            await self.service.refresh("refresh", "web")
