"""Models for the email OTP step-up challenge."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from stepup.auth.models.tokens import TokenSet

SUCCESS_COMPLETED = "SUCCESS_COMPLETED"


class ChallengeState(str, Enum):
    """Lifecycle of one step-up attempt."""

    IDLE = "idle"
    REQUESTING = "requesting"
    CHALLENGE_SHOWN = "challenge_shown"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ChallengeContext:
    """Canonical view of a provider challenge response.

    ``raw`` keeps the untouched provider body so a caller can render
    anything provider-specific (prompts, remaining attempts). ``client_id``
    is the step-up identity the challenge was requested with.
    """

    flow_id: str
    authenticator_id: str
    authn_href: str | None = None
    client_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def build_submission(self, otp_code: str) -> dict[str, Any]:
        """Build the JSON body that answers this challenge with an OTP."""
        return {
            "flowId": self.flow_id,
            "selectedAuthenticator": {
                "authenticatorId": self.authenticator_id,
                "params": {"OTPCode": otp_code},
            },
        }


@dataclass(frozen=True)
class VerifyOutcome:
    """Result of submitting an OTP.

    ``token_set`` is only set when the provider completed the flow and
    embedded an authorization code that was exchanged. A completed flow
    without a code does not elevate the session.
    """

    flow_status: str | None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)
    token_set: TokenSet | None = None
    next_context: ChallengeContext | None = None

    def is_completed(self) -> bool:
        return self.flow_status == SUCCESS_COMPLETED

    @property
    def elevated(self) -> bool:
        return self.token_set is not None
