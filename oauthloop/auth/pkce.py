"""PKCE (Proof Key for Code Exchange) and nonce primitives.

RFC 7636 - Proof Key for Code Exchange for OAuth 2.0 public clients.
Uses S256 challenge method (SHA-256 hash of the code verifier). The same
random string generator produces the ``state`` nonce.
"""

from __future__ import annotations

import hashlib
import secrets

from base64 import urlsafe_b64encode
from collections.abc import Callable
from dataclasses import dataclass


# A cryptographically secure source of N random bytes.
RandomSource = Callable[[int], bytes]


def base64url_encode(data: bytes) -> str:
    """Encode bytes as URL-safe base64 with the ``=`` padding stripped."""
    return urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_random_urlsafe_string(
    byte_length: int,
    random_source: RandomSource | None = None,
) -> str:
    """Generate a random string over ``[A-Za-z0-9_-]``.

    Parameters
    ----------
    byte_length : int
        Number of random bytes to draw before encoding.
    random_source : RandomSource, optional
        Byte source; defaults to ``secrets.token_bytes``.

    Returns
    -------
    str
        The unpadded URL-safe base64 encoding of the drawn bytes.

    Raises
    ------
    ValueError
        If ``byte_length`` is less than 1.
    """
    if byte_length < 1:
        msg = f"byte_length must be at least 1, got {byte_length}"
        raise ValueError(msg)
    source = random_source or secrets.token_bytes
    return base64url_encode(source(byte_length))


def derive_code_challenge(verifier: str) -> str:
    """Derive the S256 code challenge for a code verifier."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64url_encode(digest)


@dataclass(frozen=True)
class PKCEMaterial:
    """PKCE code verifier and challenge pair.

    Attributes
    ----------
    verifier : str
        The code verifier (high-entropy random string). Kept secret until
        the token exchange.
    challenge : str
        The code challenge (base64url-encoded SHA-256 hash of verifier).
    method : str
        The challenge method, always "S256".
    """

    verifier: str
    challenge: str
    method: str = "S256"

    @classmethod
    def generate(
        cls,
        length: int = 32,
        random_source: RandomSource | None = None,
    ) -> PKCEMaterial:
        """Generate a new PKCE code verifier and challenge.

        Parameters
        ----------
        length : int
            Number of bytes for the random verifier (default 32).
            RFC 7636 recommends at least 32 bytes.
        random_source : RandomSource, optional
            Byte source; defaults to ``secrets.token_bytes``.

        Returns
        -------
        PKCEMaterial
            A new PKCE verifier/challenge pair.
        """
        verifier = generate_random_urlsafe_string(length, random_source)
        return cls(verifier=verifier, challenge=derive_code_challenge(verifier))
