"""Authorization request construction for login and step-up.

Builds the redirect URL for the standard PKCE login and issues the
direct-mode authorize request that starts an OTP step-up challenge.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from stepup.auth.models.errors import ChallengeInitiationError
from stepup.auth.models.flow import AuthorizationRequest, StepUpAuthorizationRequest
from stepup.auth.models.security import FlowState
from stepup.auth.primitives.pkce import PKCEManager, generate_state
from stepup.auth.primitives.storage import SessionStore
from stepup.config import ProviderConfig

logger = logging.getLogger(__name__)

PENDING_STATE_KEY = "pkce_state"
FLOW_KEY_PREFIX = "pkce_flow:"


def flow_key(state: str) -> str:
    return f"{FLOW_KEY_PREFIX}{state}"


class AuthorizationRequestBuilder:
    """Creates authorization requests for both flow variants.

    The login variant persists a ``FlowState`` so the redirect landing can
    find its verifier after the page reloads. Only one login is pending at
    a time: starting a new one replaces the pending state pointer.
    """

    def __init__(
        self,
        config: ProviderConfig,
        store: SessionStore,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.store = store
        self._pkce_manager = PKCEManager()
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=config.timeout, verify=config.verify_tls
        )

    def build_login_url(self, client_id: str | None = None) -> tuple[str, FlowState]:
        """Start a PKCE login and return the URL to navigate to.

        Args:
            client_id: Client identity to log in with. Defaults to the
                primary login client.

        Returns:
            Tuple of (authorization_url, flow_state)

        Raises:
            CryptoUnavailableError: If no secure random source exists
        """
        client_id = client_id or self.config.client_id

        pkce_params = self._pkce_manager.generate_parameters()
        state = generate_state()
        flow_state = FlowState(
            state=state, client_id=client_id, verifier=pkce_params.code_verifier
        )

        # Only one login is pending; drop the verifier of an abandoned one
        previous = self.store.load(PENDING_STATE_KEY)
        if isinstance(previous, str):
            self.discard_flow(previous)

        self.store.save(PENDING_STATE_KEY, state)
        self.store.save(flow_key(state), flow_state.to_dict())

        auth_request = AuthorizationRequest(
            authorization_endpoint=self.config.authorization_endpoint,
            client_id=client_id,
            redirect_uri=self.config.redirect_uri,
            scope=self.config.scope,
            state=state,
            code_challenge=pkce_params.code_challenge,
            code_challenge_method=pkce_params.code_challenge_method,
        )

        logger.info(f"Generated authorization URL for client {client_id}")
        return auth_request.build_authorization_url(), flow_state

    def pending_flow(self) -> FlowState | None:
        """Return the single pending login flow, if any."""
        state = self.store.load(PENDING_STATE_KEY)
        if not isinstance(state, str):
            return None
        return FlowState.from_dict(self.store.load(flow_key(state)))

    def discard_flow(self, state: str) -> None:
        self.store.remove(flow_key(state))
        if self.store.load(PENDING_STATE_KEY) == state:
            self.store.remove(PENDING_STATE_KEY)

    async def build_step_up_request(
        self, client_id: str | None = None, username_hint: str | None = None
    ) -> dict[str, Any]:
        """Ask the provider for a step-up challenge without a redirect.

        Args:
            client_id: Step-up client identity. Defaults to the configured
                step-up client.
            username_hint: Username from the current identity token, if known

        Returns:
            The provider's raw JSON challenge description

        Raises:
            ChallengeInitiationError: If the request fails or the provider
                does not answer with JSON
        """
        request = StepUpAuthorizationRequest(
            authorization_endpoint=self.config.authorization_endpoint,
            client_id=client_id or self.config.step_up_client_id,
            redirect_uri=self.config.redirect_uri,
            scope=self.config.step_up_scope,
            state=self.config.step_up_state,
            username=username_hint,
        )

        logger.debug(
            f"Requesting step-up challenge for client {request.client_id} "
            f"(username hint: {'yes' if username_hint else 'no'})"
        )

        try:
            response = await self._http_client.post(
                request.url,
                data=request.to_form_data(),
                headers={
                    "Accept": "application/json",
                    "Content-Type": "application/x-www-form-urlencoded",
                },
            )
        except httpx.HTTPError as e:
            raise ChallengeInitiationError(
                f"HTTP error requesting step-up challenge: {e}"
            ) from e

        if not 200 <= response.status_code < 300:
            body = response.text
            logger.warning(f"Step-up authorize failed with {response.status_code}")
            raise ChallengeInitiationError(
                f"Step-up authorize failed: {response.status_code} {body}",
                status=response.status_code,
                body=body,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ChallengeInitiationError(
                "Step-up authorize response was not JSON",
                status=response.status_code,
                body=response.text,
            ) from e

        if not isinstance(data, dict):
            raise ChallengeInitiationError(
                "Step-up authorize response was not a JSON object",
                status=response.status_code,
                body=data,
            )

        return data

    async def close(self) -> None:
        """Close the HTTP client if this builder created it."""
        if self._owns_client:
            await self._http_client.aclose()
