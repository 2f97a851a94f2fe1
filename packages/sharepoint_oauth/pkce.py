"""PKCE (Proof Key for Code Exchange) and state generation."""

import hashlib
import secrets
import typing as t
from base64 import urlsafe_b64encode

CODE_CHALLENGE_METHOD = 'S256'


def _b64url(data: bytes) -> str:
    return urlsafe_b64encode(data).decode('utf-8').rstrip('=')


class PKCEManager:
    """Generates PKCE verifier/challenge pairs and state tokens.

    All randomness comes from ``secrets``; nothing here is seeded or cached.
    """

    @staticmethod
    def generate_verifier(length: int = 32) -> str:
        """Generate a code verifier.

        Args:
            length: Number of random bytes. 32 bytes encode to 43 characters.

        Returns:
            Base64url encoded verifier without padding.
        """
        return _b64url(secrets.token_bytes(length))

    @staticmethod
    def generate_challenge(verifier: str) -> str:
        """Derive the S256 code challenge for a verifier.

        Args:
            verifier: Code verifier.

        Returns:
            Base64url encoded SHA-256 digest without padding.
        """
        digest = hashlib.sha256(verifier.encode('utf-8')).digest()
        return _b64url(digest)

    @classmethod
    def generate_pair(cls, length: int = 32) -> t.Tuple[str, str, str]:
        """Generate a verifier, its challenge and the challenge method."""
        verifier = cls.generate_verifier(length)
        return verifier, cls.generate_challenge(verifier), CODE_CHALLENGE_METHOD

    @staticmethod
    def generate_state_nonce(length: int = 16) -> t.Tuple[str, str]:
        """Generate two independent random tokens for ``state`` and ``nonce``."""
        return _b64url(secrets.token_bytes(length)), _b64url(secrets.token_bytes(length))


def generate_pkce() -> t.Tuple[str, str, str]:
    return PKCEManager.generate_pair()


def generate_state_nonce() -> t.Tuple[str, str]:
    return PKCEManager.generate_state_nonce()
