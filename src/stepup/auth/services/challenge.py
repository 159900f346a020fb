"""Email OTP step-up challenge service.

Drives the challenge/response sub-protocol: request a challenge in direct
mode, normalize the provider's variable response into a ``ChallengeContext``,
submit the user's OTP and, once the provider reports completion with an
embedded authorization code, exchange that code for an elevated token set
without a browser redirect.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urljoin

import httpx

from stepup.auth.models.challenge import (
    ChallengeContext,
    ChallengeState,
    VerifyOutcome,
)
from stepup.auth.models.errors import (
    ChallengeError,
    ChallengeNormalizationError,
    OtpVerificationError,
    TokenExchangeError,
)
from stepup.auth.primitives.probing import (
    AUTHENTICATOR_ID_RULES,
    FLOW_ID_RULES,
    find_authn_href,
    probe,
    resolve,
)
from stepup.auth.services.authorization import AuthorizationRequestBuilder
from stepup.auth.services.tokens import CodeExchangeService
from stepup.config import ProviderConfig

logger = logging.getLogger(__name__)


def normalize_challenge(
    raw: dict[str, Any], client_id: str | None = None
) -> ChallengeContext:
    """Extract the canonical challenge identifiers from a provider response.

    Raises:
        ChallengeNormalizationError: If no flow id or no authenticator id
            can be located
    """
    flow_id = probe(raw, FLOW_ID_RULES)
    if not flow_id:
        raise ChallengeNormalizationError(
            "Unable to locate flowId in authorize response"
        )

    authenticator_id = probe(raw, AUTHENTICATOR_ID_RULES)
    if not authenticator_id:
        raise ChallengeNormalizationError(
            "Unable to locate authenticatorId in authorize response"
        )

    return ChallengeContext(
        flow_id=flow_id,
        authenticator_id=authenticator_id,
        authn_href=find_authn_href(raw),
        client_id=client_id,
        raw=raw,
    )


class StepUpChallengeService:
    """Runs one OTP step-up attempt at a time.

    State moves IDLE -> REQUESTING -> CHALLENGE_SHOWN -> VERIFYING and ends
    in COMPLETED or FAILED. A rejected OTP leaves the challenge context
    usable, so ``verify`` may be called again from FAILED. A multi-step
    flow returns to CHALLENGE_SHOWN with the next context.
    """

    def __init__(
        self,
        config: ProviderConfig,
        request_builder: AuthorizationRequestBuilder,
        code_exchange: CodeExchangeService,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the challenge service.

        Args:
            config: Provider endpoints and client settings
            request_builder: Issues the direct-mode authorize request
            code_exchange: Exchanges the code embedded in a completed flow
            http_client: Optional shared client. Share it with the request
                builder so provider session cookies carry over from the
                authorize call to the OTP submission.
        """
        self.config = config
        self.request_builder = request_builder
        self.code_exchange = code_exchange
        self.state = ChallengeState.IDLE
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=config.timeout, verify=config.verify_tls
        )

    async def begin(
        self, client_id: str | None = None, username_hint: str | None = None
    ) -> ChallengeContext:
        """Request a new OTP challenge.

        Args:
            client_id: Step-up client identity. Defaults to the configured
                step-up client.
            username_hint: Username to pre-select on the provider side

        Returns:
            ChallengeContext to show the OTP prompt for

        Raises:
            ChallengeInitiationError: If the provider rejects the request
            ChallengeNormalizationError: If the response can't be understood
        """
        client_id = client_id or self.config.step_up_client_id
        self.state = ChallengeState.REQUESTING

        try:
            raw = await self.request_builder.build_step_up_request(
                client_id, username_hint
            )
            context = normalize_challenge(raw, client_id)
        except ChallengeError:
            self.state = ChallengeState.FAILED
            raise

        self.state = ChallengeState.CHALLENGE_SHOWN
        logger.info(
            f"Step-up challenge shown (authenticator {context.authenticator_id})"
        )
        return context

    async def verify(self, context: ChallengeContext, otp_code: str) -> VerifyOutcome:
        """Submit an OTP for a challenge.

        Args:
            context: Context returned by ``begin`` (or a previous ``verify``)
            otp_code: Code the user received by email

        Returns:
            VerifyOutcome. ``token_set`` is set only when the provider
            completed the flow with an embedded authorization code.

        Raises:
            OtpVerificationError: If the code is empty or rejected
            TokenExchangeError: If the embedded code can't be exchanged
        """
        otp_code = (otp_code or "").strip()
        if not otp_code:
            raise OtpVerificationError("Enter the OTP code")

        submission_url = self.config.authn_endpoint
        if context.authn_href:
            # Providers may advertise the authn link relative to themselves
            submission_url = urljoin(
                self.config.authorization_endpoint, context.authn_href
            )

        self.state = ChallengeState.VERIFYING
        logger.debug(f"Submitting OTP to {submission_url}")

        try:
            response = await self._http_client.post(
                submission_url,
                json=context.build_submission(otp_code),
                headers={
                    "Accept": "application/json",
                    "Content-Type": "application/json",
                },
            )
        except httpx.HTTPError as e:
            self.state = ChallengeState.FAILED
            raise OtpVerificationError(f"HTTP error during OTP verify: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if not 200 <= response.status_code < 300:
            self.state = ChallengeState.FAILED
            detail = body if body is not None else response.text
            logger.warning(f"OTP verify failed with {response.status_code}")
            raise OtpVerificationError(
                f"OTP verify failed ({response.status_code}). {detail}",
                status=response.status_code,
                body=detail,
            )

        raw = body if isinstance(body, dict) else {}
        return await self._handle_verify_response(raw, context)

    async def _handle_verify_response(
        self, raw: dict[str, Any], context: ChallengeContext
    ) -> VerifyOutcome:
        flow_status = raw.get("flowStatus")
        outcome = VerifyOutcome(flow_status=flow_status, raw=raw)

        if not outcome.is_completed():
            # Multi-step flow or a retry prompt: hand back the next step
            try:
                next_context = normalize_challenge(raw, context.client_id)
            except ChallengeNormalizationError:
                next_context = None
            self.state = ChallengeState.CHALLENGE_SHOWN
            logger.info(f"Step-up flow not complete yet (status: {flow_status})")
            return VerifyOutcome(
                flow_status=flow_status, raw=raw, next_context=next_context
            )

        auth_code = resolve(raw, ("authData", "code"))
        if not auth_code:
            self.state = ChallengeState.COMPLETED
            logger.warning("Step-up flow completed without an authorization code")
            return outcome

        client_id = context.client_id or self.config.step_up_client_id
        try:
            token_set = await self.code_exchange.exchange(
                str(auth_code), None, client_id
            )
        except TokenExchangeError:
            self.state = ChallengeState.FAILED
            raise

        self.state = ChallengeState.COMPLETED
        logger.info(f"Step-up completed, tokens issued to client {client_id}")
        return VerifyOutcome(flow_status=flow_status, raw=raw, token_set=token_set)

    def reset(self) -> None:
        self.state = ChallengeState.IDLE

    async def close(self) -> None:
        """Close the HTTP client if this service created it."""
        if self._owns_client:
            await self._http_client.aclose()
