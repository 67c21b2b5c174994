"""PKCE (Proof Key for Code Exchange) implementation per RFC 7636.

Etsy requires PKCE with the S256 method for every authorization code grant.
A fresh pair is generated for each authorization attempt so an abandoned
attempt never leaves a verifier behind that a retry could reuse.
"""

import base64
import hashlib
import re
import secrets
from dataclasses import dataclass


# Verifier length; RFC 7636 allows 43-128 characters
VERIFIER_LENGTH = 128

# Random bytes per verifier chunk (256 bits of entropy)
VERIFIER_ENTROPY_BYTES = 32

# Verifiers use only ASCII letters and digits, a subset of the unreserved set
VERIFIER_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


@dataclass
class PKCEPair:
    """PKCE code verifier and challenge pair.

    The verifier is a cryptographically random string sent in the token request.
    The challenge is a SHA256 hash of the verifier sent in the authorization request.
    """

    verifier: str
    challenge: str
    method: str = "S256"


def generate_code_verifier() -> str:
    """Generate a cryptographically random code verifier.

    Random bytes are base64-encoded and stripped to ``[A-Za-z0-9]``; chunks are
    accumulated until exactly VERIFIER_LENGTH characters are available.

    Returns:
        128-character alphanumeric code verifier
    """
    verifier = ""
    while len(verifier) < VERIFIER_LENGTH:
        chunk = base64.b64encode(secrets.token_bytes(VERIFIER_ENTROPY_BYTES)).decode("ascii")
        verifier += _NON_ALNUM.sub("", chunk)
    return verifier[:VERIFIER_LENGTH]


def generate_code_challenge(verifier: str) -> str:
    """Generate S256 code challenge from verifier.

    Per RFC 7636 Section 4.2:
    code_challenge = BASE64URL(SHA256(code_verifier))

    Args:
        verifier: The code verifier string

    Returns:
        Base64URL-encoded SHA256 hash of the verifier, without padding
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_pkce_pair() -> PKCEPair:
    """Generate a complete PKCE pair (verifier + challenge).

    Returns:
        PKCEPair with verifier, challenge, and method (always "S256")
    """
    verifier = generate_code_verifier()
    challenge = generate_code_challenge(verifier)

    return PKCEPair(verifier=verifier, challenge=challenge, method="S256")


def generate_state() -> str:
    """Generate a cryptographically random state parameter.

    The state parameter protects against CSRF attacks by ensuring
    the authorization response came from a request we initiated.

    Returns:
        32-character random hex string
    """
    return secrets.token_hex(16)
