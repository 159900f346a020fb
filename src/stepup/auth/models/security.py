"""Security-related models for the PKCE authorization round-trip.

Contains PKCE parameters and the per-attempt flow state that binds a
redirect landing back to the login that started it.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass(frozen=True)
class PKCEParameters:
    """PKCE (Proof Key for Code Exchange) parameters for one flow instance.

    The challenge is always derived from the verifier (RFC 7636) and is
    never generated independently for the same flow.
    """

    code_verifier: str = field()
    code_challenge: str = field()
    code_challenge_method: str = field(default="S256")

    def __post_init__(self) -> None:
        """Validate PKCE parameters meet RFC 7636 requirements."""
        if not (43 <= len(self.code_verifier) <= 128):
            raise ValueError("code_verifier must be 43-128 characters")
        if not (43 <= len(self.code_challenge) <= 128):
            raise ValueError("code_challenge must be 43-128 characters")
        if self.code_challenge_method != "S256":
            raise ValueError("Only S256 code challenge method is supported")


@dataclass(frozen=True)
class FlowState:
    """Pending login attempt, keyed by its random ``state`` token.

    Lives in the session store between the authorization redirect and the
    redirect landing, and is removed once the code exchange finishes.
    """

    state: str
    client_id: str
    verifier: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> FlowState | None:
        """Rebuild a flow state from stored JSON, or None if incomplete."""
        if not isinstance(data, dict):
            return None
        try:
            return cls(
                state=str(data["state"]),
                client_id=str(data["client_id"]),
                verifier=str(data["verifier"]),
            )
        except KeyError:
            return None
