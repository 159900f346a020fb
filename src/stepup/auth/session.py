"""Session orchestration for login, redirect landing and step-up.

``SessionController`` owns the current token set and wires the request
builder, token services and step-up challenge together. It is the only
place that consumes authorization codes, and it does so at most once per
``(state, code)`` pair.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from stepup.auth.models.challenge import ChallengeContext, VerifyOutcome
from stepup.auth.models.errors import (
    FlowStateError,
    NotAuthenticatedError,
    RefreshError,
    UserInfoError,
)
from stepup.auth.models.flow import RedirectLanding
from stepup.auth.models.security import FlowState
from stepup.auth.models.tokens import TokenSet
from stepup.auth.primitives.storage import SessionStore
from stepup.auth.services.authorization import (
    FLOW_KEY_PREFIX,
    PENDING_STATE_KEY,
    AuthorizationRequestBuilder,
    flow_key,
)
from stepup.auth.services.challenge import StepUpChallengeService
from stepup.auth.services.tokens import CodeExchangeService, TokenRefreshService
from stepup.config import ProviderConfig

logger = logging.getLogger(__name__)

TOKENS_KEY = "tokens"
USED_CODE_PREFIX = "pkce_code_used:"


def used_code_key(state: str, code: str) -> str:
    return f"{USED_CODE_PREFIX}{state}:{code}"


class Navigator(Protocol):
    """Protocol for the surface that shows URLs to the user.

    Allows different strategies for browser interaction:
    - Web framework redirects
    - Opening a local browser
    - Recording URLs in tests
    """

    def assign(self, url: str) -> None:
        """Navigate away to ``url`` (full page navigation)."""
        ...

    def replace(self, url: str) -> None:
        """Replace the visible URL without navigating."""
        ...


@dataclass(frozen=True)
class LandingResult:
    """Outcome of handling one redirect landing.

    ``handled`` is False when the landing carried no code, belonged to a
    stale or foreign flow, or had already been consumed.
    """

    handled: bool
    token_set: TokenSet | None = None
    clean_url: str | None = None


class SessionController:
    """Owns one user's session: token set, pending login and step-up.

    Token availability is only exposed after an exchange has resolved, so
    protected calls made through ``authorized_fetch`` always see a complete
    token set.
    """

    def __init__(
        self,
        config: ProviderConfig,
        store: SessionStore | None = None,
        navigator: Navigator | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the controller and restore any persisted token set.

        Args:
            config: Provider endpoints and client identities
            store: Session store. Defaults to a memory-only store.
            navigator: Optional navigator for redirects and URL cleanup
            http_client: Optional shared client for all provider calls
        """
        self.config = config
        self.store = store if store is not None else SessionStore()
        self.navigator = navigator

        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=config.timeout, verify=config.verify_tls
        )

        # Initialize service components over one client so provider
        # cookies are shared between the authorize and OTP calls
        self.request_builder = AuthorizationRequestBuilder(
            config, self.store, self._http_client
        )
        self.code_exchange = CodeExchangeService(config, self._http_client)
        self.token_refresh = TokenRefreshService(config, self._http_client)
        self.challenge = StepUpChallengeService(
            config, self.request_builder, self.code_exchange, self._http_client
        )

        self._in_flight: set[str] = set()
        self._token_set = self._restore_token_set()

    async def __aenter__(self) -> SessionController:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def is_authenticated(self) -> bool:
        return self._token_set is not None

    def get_current_token_set(self) -> TokenSet | None:
        return self._token_set

    def start_login(self, client_id: str | None = None) -> str:
        """Begin a PKCE login and navigate to the provider.

        The flow continues in ``handle_redirect_landing`` once the provider
        redirects back.

        Returns:
            The authorization URL

        Raises:
            CryptoUnavailableError: If no secure random source exists
        """
        url, _ = self.request_builder.build_login_url(client_id)
        if self.navigator is not None:
            self.navigator.assign(url)
        return url

    async def handle_redirect_landing(self, url: str) -> LandingResult:
        """Consume the ``code``/``state`` of a redirect landing, once.

        Landings without a code, with a state that doesn't match the pending
        login, or whose code was already redeemed are ignored without
        raising.

        Args:
            url: The URL the provider redirected back to

        Returns:
            LandingResult describing what happened

        Raises:
            FlowStateError: If the pending flow has lost its verifier
            TokenExchangeError: If the provider rejects the code. The
                current token set is left untouched.
        """
        landing = RedirectLanding.from_url(url)
        if not landing.has_code():
            return LandingResult(handled=False)

        pending_state = self.store.load(PENDING_STATE_KEY)
        if not isinstance(pending_state, str) or not secrets.compare_digest(
            pending_state.encode(), landing.state.encode()
        ):
            # Foreign or stale code: log it, but don't alarm the user
            logger.warning(
                "Ignoring redirect landing whose state does not match the "
                "pending login"
            )
            return LandingResult(handled=False)

        marker = used_code_key(landing.state, landing.code)
        if marker in self._in_flight or self.store.has(marker):
            logger.warning("Ignoring duplicate redirect landing for a consumed code")
            return LandingResult(handled=False)

        # Mark before any await so a concurrent landing sees the code as used
        self._in_flight.add(marker)
        self.store.save(marker, True)

        try:
            flow_state = FlowState.from_dict(self.store.load(flow_key(landing.state)))
            if flow_state is None:
                raise FlowStateError("Missing PKCE verifier. Please sign in again.")

            token_set = await self.code_exchange.exchange(
                landing.code, flow_state.verifier, flow_state.client_id
            )
        finally:
            self.request_builder.discard_flow(landing.state)
            self._in_flight.discard(marker)

        self._set_token_set(token_set)

        clean_url = landing.clean_url()
        if self.navigator is not None:
            self.navigator.replace(clean_url)

        logger.info(f"Login completed for client {token_set.client_id_used}")
        return LandingResult(handled=True, token_set=token_set, clean_url=clean_url)

    async def authorized_fetch(
        self, url: str, method: str = "GET", **request_kwargs: Any
    ) -> httpx.Response:
        """Send a request with the current access token as Bearer auth.

        Raises:
            NotAuthenticatedError: If there is no token set
        """
        if self._token_set is None:
            raise NotAuthenticatedError("No access token; log in first")

        headers = dict(request_kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {self._token_set.access_token}"
        return await self._http_client.request(
            method, url, headers=headers, **request_kwargs
        )

    async def fetch_user_info(self) -> dict[str, Any]:
        """Fetch the user's claims from the user-info endpoint.

        Raises:
            NotAuthenticatedError: If there is no token set
            UserInfoError: If the endpoint rejects the request
        """
        try:
            response = await self.authorized_fetch(
                self.config.userinfo_endpoint, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as e:
            raise UserInfoError(f"HTTP error fetching userinfo: {e}") from e

        if not 200 <= response.status_code < 300:
            raise UserInfoError(
                f"Failed to fetch userinfo ({response.status_code})",
                status=response.status_code,
                body=response.text,
            )

        try:
            claims = response.json()
        except ValueError as e:
            raise UserInfoError(
                "Userinfo response was not JSON",
                status=response.status_code,
                body=response.text,
            ) from e

        if not isinstance(claims, dict):
            raise UserInfoError(
                "Userinfo response was not a JSON object",
                status=response.status_code,
                body=claims,
            )
        return claims

    async def request_step_up(self, client_id: str | None = None) -> ChallengeContext:
        """Start an OTP challenge ahead of a sensitive operation.

        The ``username`` claim of the current identity token, if any, is
        sent as a hint so the provider can skip identification.
        """
        username = None
        if self._token_set is not None:
            claims = self._token_set.id_token_claims() or {}
            if claims.get("username"):
                username = str(claims["username"])

        return await self.challenge.begin(client_id, username)

    async def submit_step_up_code(
        self, context: ChallengeContext, code: str
    ) -> VerifyOutcome:
        """Submit an OTP; an elevated token set replaces the current one."""
        outcome = await self.challenge.verify(context, code)
        if outcome.token_set is not None:
            self._set_token_set(outcome.token_set)
        return outcome

    async def refresh(self) -> TokenSet:
        """Refresh tokens with the identity that issued the current set.

        Raises:
            RefreshError: If there's nothing to refresh or the provider
                rejects the refresh token. The session is cleared in the
                latter case and the user must log in again.
        """
        current = self._token_set
        if current is None or not current.can_refresh():
            raise RefreshError("No refresh_token available")

        try:
            token_set = await self.token_refresh.refresh(
                current.refresh_token, current.client_id_used
            )
        except RefreshError:
            logger.error("Token refresh rejected; clearing session")
            self._clear_token_set()
            raise

        self._set_token_set(token_set)
        return token_set

    def logout(self) -> str:
        """Clear the session and navigate to the provider's logout URL.

        Pending logins and consumed-code markers are dropped along with the
        token set.

        Returns:
            The end-session URL (with ``id_token_hint`` when available)
        """
        params = {}
        if self._token_set is not None and self._token_set.id_token:
            params["id_token_hint"] = self._token_set.id_token
        params["post_logout_redirect_uri"] = self.config.redirect_uri
        url = f"{self.config.end_session_endpoint}?{urlencode(params)}"

        self._clear_token_set()
        self.store.remove(PENDING_STATE_KEY)
        self.store.remove_prefix(FLOW_KEY_PREFIX)
        self.store.remove_prefix(USED_CODE_PREFIX)
        self.challenge.reset()
        logger.info("Session cleared for logout")

        if self.navigator is not None:
            self.navigator.assign(url)
        return url

    async def close(self) -> None:
        """Close the shared HTTP client if this controller created it."""
        if self._owns_client:
            await self._http_client.aclose()

    def _set_token_set(self, token_set: TokenSet) -> None:
        self._token_set = token_set
        self.store.save(TOKENS_KEY, token_set.to_storage())

    def _clear_token_set(self) -> None:
        self._token_set = None
        self.store.remove(TOKENS_KEY)

    def _restore_token_set(self) -> TokenSet | None:
        data = self.store.load(TOKENS_KEY)
        if not isinstance(data, dict):
            return None
        try:
            return TokenSet.model_validate(data)
        except ValidationError:
            logger.warning("Discarding stored token set that no longer validates")
            self.store.remove(TOKENS_KEY)
            return None
