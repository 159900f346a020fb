"""Tests for the OTP step-up challenge service.

Covers:
- Normalizing the provider's variable challenge shapes
- OTP submission body and target URL
- Completion with and without an embedded authorization code
- State transitions, including multi-step flows
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from stepup.auth.models.challenge import ChallengeContext, ChallengeState
from stepup.auth.models.errors import (
    ChallengeInitiationError,
    ChallengeNormalizationError,
    OtpVerificationError,
    TokenExchangeError,
)
from stepup.auth.models.tokens import TokenSet
from stepup.auth.services.challenge import StepUpChallengeService, normalize_challenge
from stepup.config import ProviderConfig


def _response(status_code, body=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    if body is None:
        response.json.side_effect = ValueError("Invalid JSON")
    else:
        response.json.return_value = body
    response.text = text
    return response


class TestNormalizeChallenge:
    def test_session_data_key_shape(self):
        # Arrange
        raw = {
            "sessionDataKey": "sdk-9",
            "authenticators": [{"id": "email-otp"}],
            "links": [{"href": "https://idp/oauth2/authn"}],
        }

        # Act
        context = normalize_challenge(raw, "step-up")

        # Assert
        assert context.flow_id == "sdk-9"
        assert context.authenticator_id == "email-otp"
        assert context.authn_href == "https://idp/oauth2/authn"
        assert context.client_id == "step-up"
        assert context.raw is raw

    def test_flow_id_with_next_step_authenticator(self):
        # Arrange
        raw = {
            "flowId": "flow-1",
            "nextStep": {"authenticators": [{"authenticatorId": "RW1haWxPVFA"}]},
        }

        # Act
        context = normalize_challenge(raw)

        # Assert
        assert context.flow_id == "flow-1"
        assert context.authenticator_id == "RW1haWxPVFA"
        assert context.authn_href is None

    def test_missing_flow_id_raises(self):
        with pytest.raises(ChallengeNormalizationError, match="flowId"):
            normalize_challenge({"authenticatorId": "a"})

    def test_missing_authenticator_id_raises(self):
        with pytest.raises(ChallengeNormalizationError, match="authenticatorId"):
            normalize_challenge({"flowId": "f"})

    def test_submission_body(self):
        # Arrange
        context = ChallengeContext(flow_id="f-1", authenticator_id="a-1")

        # Act & Assert
        assert context.build_submission("123456") == {
            "flowId": "f-1",
            "selectedAuthenticator": {
                "authenticatorId": "a-1",
                "params": {"OTPCode": "123456"},
            },
        }


class TestBegin:
    def setup_method(self):
        # Arrange
        self.config = ProviderConfig()
        self.request_builder = MagicMock()
        self.request_builder.build_step_up_request = AsyncMock()
        self.service = StepUpChallengeService(
            self.config, self.request_builder, MagicMock(), AsyncMock()
        )

    async def test_begin_shows_challenge(self):
        # Arrange
        self.request_builder.build_step_up_request.return_value = {
            "flowId": "f-1",
            "authenticatorId": "a-1",
        }

        # Act
        context = await self.service.begin(username_hint="alice")

        # Assert
        assert context.flow_id == "f-1"
        assert context.client_id == self.config.step_up_client_id
        assert self.service.state is ChallengeState.CHALLENGE_SHOWN
        self.request_builder.build_step_up_request.assert_awaited_once_with(
            self.config.step_up_client_id, "alice"
        )

    async def test_unrecognized_response_fails(self):
        # Arrange
        self.request_builder.build_step_up_request.return_value = {"foo": "bar"}

        # Act & Assert
        with pytest.raises(ChallengeNormalizationError):
            await self.service.begin()

        assert self.service.state is ChallengeState.FAILED

    async def test_initiation_error_fails(self):
        # Arrange
        self.request_builder.build_step_up_request.side_effect = (
            ChallengeInitiationError("boom", status=500)
        )

        # Act & Assert
        with pytest.raises(ChallengeInitiationError):
            await self.service.begin()

        assert self.service.state is ChallengeState.FAILED


class TestVerify:
    def setup_method(self):
        # Arrange
        self.config = ProviderConfig()
        self.http_client = AsyncMock()
        self.code_exchange = MagicMock()
        self.code_exchange.exchange = AsyncMock()
        self.service = StepUpChallengeService(
            self.config, MagicMock(), self.code_exchange, self.http_client
        )
        self.context = ChallengeContext(
            flow_id="f-1",
            authenticator_id="a-1",
            authn_href="https://idp.example.com/oauth2/authn",
            client_id="step-up",
        )

    async def test_completed_with_code_exchanges_once(self):
        # Arrange
        self.http_client.post.return_value = _response(
            200, {"flowStatus": "SUCCESS_COMPLETED", "authData": {"code": "c-1"}}
        )
        elevated = TokenSet(access_token="elevated", clientIdUsed="step-up")
        self.code_exchange.exchange.return_value = elevated

        # Act
        outcome = await self.service.verify(self.context, " 123456 ")

        # Assert
        assert outcome.is_completed()
        assert outcome.elevated
        assert outcome.token_set is elevated
        assert self.service.state is ChallengeState.COMPLETED
        self.code_exchange.exchange.assert_awaited_once_with("c-1", None, "step-up")

        call_args = self.http_client.post.call_args
        assert call_args[0][0] == "https://idp.example.com/oauth2/authn"
        assert call_args[1]["json"]["selectedAuthenticator"]["params"] == {
            "OTPCode": "123456"
        }

    async def test_relative_authn_href_is_resolved_against_provider(self):
        # Arrange
        context = normalize_challenge(
            {
                "flowId": "f-1",
                "authenticatorId": "a-1",
                "links": [{"href": "/oauth2/authn"}],
            }
        )
        self.http_client.post.return_value = _response(
            200, {"flowStatus": "SUCCESS_COMPLETED"}
        )

        # Act
        await self.service.verify(context, "123456")

        # Assert
        assert self.http_client.post.call_args[0][0] == (
            "https://localhost:9444/oauth2/authn"
        )

    async def test_missing_authn_href_uses_configured_endpoint(self):
        # Arrange
        context = ChallengeContext(flow_id="f-1", authenticator_id="a-1")
        self.http_client.post.return_value = _response(
            200, {"flowStatus": "SUCCESS_COMPLETED", "authData": {"code": "c-1"}}
        )
        self.code_exchange.exchange.return_value = TokenSet(
            access_token="a", clientIdUsed=self.config.step_up_client_id
        )

        # Act
        await self.service.verify(context, "123456")

        # Assert
        assert self.http_client.post.call_args[0][0] == (
            "https://localhost:9444/oauth2/authn"
        )
        self.code_exchange.exchange.assert_awaited_once_with(
            "c-1", None, self.config.step_up_client_id
        )

    async def test_completed_without_code_does_not_elevate(self):
        # Arrange
        self.http_client.post.return_value = _response(
            200, {"flowStatus": "SUCCESS_COMPLETED"}
        )

        # Act
        outcome = await self.service.verify(self.context, "123456")

        # Assert
        assert outcome.is_completed()
        assert not outcome.elevated
        assert self.service.state is ChallengeState.COMPLETED
        self.code_exchange.exchange.assert_not_awaited()

    async def test_incomplete_flow_returns_next_step(self):
        # Arrange
        self.http_client.post.return_value = _response(
            200,
            {
                "flowStatus": "INCOMPLETE",
                "flowId": "f-2",
                "nextStep": {"authenticators": [{"authenticatorId": "a-2"}]},
            },
        )

        # Act
        outcome = await self.service.verify(self.context, "123456")

        # Assert
        assert not outcome.is_completed()
        assert outcome.next_context.flow_id == "f-2"
        assert outcome.next_context.authenticator_id == "a-2"
        assert outcome.next_context.client_id == "step-up"
        assert self.service.state is ChallengeState.CHALLENGE_SHOWN
        self.code_exchange.exchange.assert_not_awaited()

    async def test_empty_otp_is_rejected_without_request(self):
        with pytest.raises(OtpVerificationError, match="Enter the OTP code"):
            await self.service.verify(self.context, "   ")

        self.http_client.post.assert_not_awaited()

    async def test_rejected_otp_surfaces_status_and_body(self):
        # Arrange
        self.http_client.post.return_value = _response(
            400, {"code": "ABA-60002", "message": "Invalid OTP"}
        )

        # Act & Assert
        with pytest.raises(OtpVerificationError) as exc_info:
            await self.service.verify(self.context, "000000")

        assert exc_info.value.status == 400
        assert exc_info.value.body["message"] == "Invalid OTP"
        assert self.service.state is ChallengeState.FAILED

    async def test_rejected_otp_with_text_body(self):
        # Arrange
        self.http_client.post.return_value = _response(500, text="Server Error")

        # Act & Assert
        with pytest.raises(OtpVerificationError) as exc_info:
            await self.service.verify(self.context, "000000")

        assert exc_info.value.body == "Server Error"

    async def test_network_error_is_wrapped(self):
        # Arrange
        self.http_client.post.side_effect = httpx.ConnectError("refused")

        # Act & Assert
        with pytest.raises(OtpVerificationError, match="HTTP error"):
            await self.service.verify(self.context, "123456")

        assert self.service.state is ChallengeState.FAILED

    async def test_exchange_failure_fails_the_attempt(self):
        # Arrange
        self.http_client.post.return_value = _response(
            200, {"flowStatus": "SUCCESS_COMPLETED", "authData": {"code": "c-1"}}
        )
        self.code_exchange.exchange.side_effect = TokenExchangeError(
            "rejected", status=400
        )

        # Act & Assert
        with pytest.raises(TokenExchangeError):
            await self.service.verify(self.context, "123456")

        assert self.service.state is ChallengeState.FAILED

    def test_reset_returns_to_idle(self):
        # Arrange
        self.service.state = ChallengeState.FAILED

        # Act
        self.service.reset()

        # Assert
        assert self.service.state is ChallengeState.IDLE
