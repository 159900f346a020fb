"""Demo web surface over a single ``SessionController``.

Serves the redirect landing at the configured redirect URI and exposes the
login, step-up, refresh, user-info and logout operations as small JSON and
redirect endpoints. One controller means one user: this is a demo, not a
multi-tenant relying party.

Run with ``stepup-demo`` after setting ``STEPUP_*`` variables (or a .env).
"""

from __future__ import annotations

import contextlib
import logging
import os
from typing import Any
from urllib.parse import urlparse

import uvicorn
from dotenv import load_dotenv
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from stepup.auth.models.challenge import ChallengeContext
from stepup.auth.models.errors import (
    ChallengeInitiationError,
    ChallengeNormalizationError,
    CryptoUnavailableError,
    FlowStateError,
    NotAuthenticatedError,
    OtpVerificationError,
    RefreshError,
    StepUpAuthError,
    TokenExchangeError,
    UserInfoError,
)
from stepup.auth.primitives.storage import SessionStore
from stepup.auth.session import SessionController
from stepup.config import ProviderConfig

logger = logging.getLogger(__name__)

# First isinstance match wins
ERROR_STATUS: dict[type[StepUpAuthError], int] = {
    NotAuthenticatedError: 401,
    RefreshError: 401,
    FlowStateError: 400,
    OtpVerificationError: 400,
    ChallengeNormalizationError: 502,
    ChallengeInitiationError: 502,
    TokenExchangeError: 502,
    UserInfoError: 502,
    CryptoUnavailableError: 500,
}


def _context_to_json(context: ChallengeContext | None) -> dict[str, Any] | None:
    if context is None:
        return None
    return {
        "flow_id": context.flow_id,
        "authenticator_id": context.authenticator_id,
        "authn_href": context.authn_href,
        "client_id": context.client_id,
    }


async def _read_json(request: Request) -> dict[str, Any]:
    try:
        data = await request.json()
    except ValueError:
        # Malformed JSON or a body that is not UTF-8
        return {}
    return data if isinstance(data, dict) else {}


class DemoApp:
    """Routes for the demo, bound to one controller."""

    def __init__(self, controller: SessionController):
        self.controller = controller
        self.challenge_context: ChallengeContext | None = None

    async def handle_landing(self, request: Request) -> Response:
        """Redirect landing: consume ``code``/``state`` then report status."""
        result = await self.controller.handle_redirect_landing(str(request.url))
        if result.handled:
            return RedirectResponse(result.clean_url, status_code=303)

        token_set = self.controller.get_current_token_set()
        return JSONResponse(
            {
                "authenticated": token_set is not None,
                "client_id": token_set.client_id_used if token_set else None,
            }
        )

    async def handle_login(self, request: Request) -> Response:
        url = self.controller.start_login(request.query_params.get("client_id"))
        return RedirectResponse(url, status_code=302)

    async def handle_step_up(self, request: Request) -> Response:
        body = await _read_json(request)
        self.challenge_context = None
        self.challenge_context = await self.controller.request_step_up(
            body.get("client_id")
        )
        return JSONResponse({"challenge": _context_to_json(self.challenge_context)})

    async def handle_step_up_verify(self, request: Request) -> Response:
        if self.challenge_context is None:
            return JSONResponse(
                {"error": "no_challenge", "detail": "Request a step-up challenge"},
                status_code=409,
            )

        body = await _read_json(request)
        outcome = await self.controller.submit_step_up_code(
            self.challenge_context, str(body.get("otp", ""))
        )
        self.challenge_context = outcome.next_context

        return JSONResponse(
            {
                "flow_status": outcome.flow_status,
                "completed": outcome.is_completed(),
                "elevated": outcome.elevated,
                "next_challenge": _context_to_json(outcome.next_context),
            }
        )

    async def handle_refresh(self, request: Request) -> Response:
        token_set = await self.controller.refresh()
        return JSONResponse(
            {"refreshed": True, "client_id": token_set.client_id_used}
        )

    async def handle_userinfo(self, request: Request) -> Response:
        return JSONResponse(await self.controller.fetch_user_info())

    async def handle_logout(self, request: Request) -> Response:
        self.challenge_context = None
        return RedirectResponse(self.controller.logout(), status_code=302)

    async def handle_error(self, request: Request, exc: Exception) -> Response:
        status_code = next(
            (
                code
                for error_cls, code in ERROR_STATUS.items()
                if isinstance(exc, error_cls)
            ),
            500,
        )
        content: dict[str, Any] = {"error": type(exc).__name__, "detail": str(exc)}
        if getattr(exc, "status", None) is not None:
            content["upstream_status"] = exc.status

        logger.warning(f"Request to {request.url.path} failed: {content['error']}")
        return JSONResponse(content, status_code=status_code)


def create_app(controller: SessionController) -> Starlette:
    """Build the Starlette application for a controller."""
    demo = DemoApp(controller)
    landing_path = urlparse(controller.config.redirect_uri).path or "/"

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        yield
        await controller.close()

    app = Starlette(
        routes=[
            Route(landing_path, demo.handle_landing, methods=["GET"]),
            Route("/login", demo.handle_login, methods=["GET"]),
            Route("/step-up", demo.handle_step_up, methods=["POST"]),
            Route("/step-up/verify", demo.handle_step_up_verify, methods=["POST"]),
            Route("/refresh", demo.handle_refresh, methods=["POST"]),
            Route("/userinfo", demo.handle_userinfo, methods=["GET"]),
            Route("/logout", demo.handle_logout, methods=["GET"]),
        ],
        exception_handlers={StepUpAuthError: demo.handle_error},
        lifespan=lifespan,
    )
    app.state.demo = demo
    return app


def main() -> None:
    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    config = ProviderConfig.from_env()
    store = SessionStore(os.getenv("STEPUP_SESSION_FILE"))
    controller = SessionController(config, store)

    redirect = urlparse(config.redirect_uri)
    host = os.getenv("STEPUP_DEMO_HOST", redirect.hostname or "127.0.0.1")
    port = int(os.getenv("STEPUP_DEMO_PORT", redirect.port or 5173))

    logger.info(f"Demo listening on {host}:{port}, landing at {config.redirect_uri}")
    uvicorn.run(create_app(controller), host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
