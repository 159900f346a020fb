"""PKCE (Proof Key for Code Exchange) primitives.

Implements RFC 7636 verifier and S256 challenge generation, plus the random
``state`` token that binds a redirect landing to its login attempt.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import string

from stepup.auth.models.errors import CryptoUnavailableError
from stepup.auth.models.security import PKCEParameters

# RFC 7636 Section 4.1 unreserved characters
VERIFIER_ALPHABET = string.ascii_letters + string.digits + "-._~"


def _random_string(alphabet: str, length: int) -> str:
    try:
        return "".join(secrets.choice(alphabet) for _ in range(length))
    except NotImplementedError as e:
        # os.urandom has no source on this platform
        raise CryptoUnavailableError(
            f"No secure random source available: {e}"
        ) from e


def generate_verifier(length: int = 64) -> str:
    """Generate a cryptographically secure code verifier.

    RFC 7636 Section 4.1: code verifier must be 43-128 characters long
    and use only unreserved characters:
        [A-Z] / [a-z] / [0-9] / "-" / "." / "_" / "~"

    Args:
        length: Verifier length, 43 to 128

    Raises:
        ValueError: If the length is outside the RFC range
        CryptoUnavailableError: If no secure random source exists
    """
    if not (43 <= length <= 128):
        raise ValueError("code_verifier length must be 43-128 characters")
    return _random_string(VERIFIER_ALPHABET, length)


def challenge_for(verifier: str) -> str:
    """Derive the S256 code challenge for a verifier.

    RFC 7636 Section 4.2: BASE64URL-ENCODE(SHA256(ASCII(code_verifier)))
    without padding.
    """
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_state(length: int = 24) -> str:
    """Generate an unguessable state parameter for CSRF binding."""
    return _random_string(VERIFIER_ALPHABET, length)


class PKCEManager:
    """Generates PKCE parameters for authorization flows."""

    def __init__(self, verifier_length: int = 64):
        self.verifier_length = verifier_length

    def generate_parameters(self) -> PKCEParameters:
        """Generate a fresh verifier and the challenge derived from it.

        Raises:
            CryptoUnavailableError: If no secure random source exists
        """
        code_verifier = generate_verifier(self.verifier_length)
        return PKCEParameters(
            code_verifier=code_verifier,
            code_challenge=challenge_for(code_verifier),
            code_challenge_method="S256",
        )
