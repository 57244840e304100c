"""Caller session tokens.

Tokens are Fernet-encrypted JSON payloads (``{"user_id", "email"}``).
Fernet authenticates and timestamps every token, so verification
also enforces the TTL.  The signing key is read from ``RELAY_TOKEN_KEY``;
``RELAY_TOKEN_KEY_OLD`` may hold the previous key during rotation.
"""

import json
import logging
import os
from typing import Any, Dict, Optional, Union

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

logger = logging.getLogger(__name__)

TOKEN_KEY_OLD_ENV = "RELAY_TOKEN_KEY_OLD"


class SessionTokenSigner:
    """Issues and verifies caller session tokens."""

    def __init__(
        self, key: Optional[str] = None, ttl_seconds: int = 86400,
    ) -> None:
        """Initialise the signer.

        Args:
            key: URL-safe base64 Fernet key.  When omitted an ephemeral
                key is generated and every token dies with the process.
            ttl_seconds: Token lifetime.
        """
        self.ttl_seconds = ttl_seconds
        self._fernet: Union[Fernet, MultiFernet] = self._build_fernet(key)

    @staticmethod
    def _build_fernet(key: Optional[str]) -> Union[Fernet, MultiFernet]:
        if not key:
            logger.warning(
                "No RELAY_TOKEN_KEY configured. Generated an ephemeral"
                " key; issued tokens will not survive a restart."
            )
            return Fernet(Fernet.generate_key())

        primary = Fernet(key.encode())
        old_key = os.environ.get(TOKEN_KEY_OLD_ENV)
        if old_key:
            return MultiFernet([primary, Fernet(old_key.encode())])
        return primary

    def issue(self, user_id: Union[int, str], email: str = "") -> str:
        payload = {"user_id": user_id, "email": email}
        return self._fernet.encrypt(
            json.dumps(payload).encode("utf-8")
        ).decode("ascii")

    def verify(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the token payload, or ``None`` if it is not valid.

        Tampered, foreign-key and expired tokens are all rejected.
        """
        if not token:
            return None
        try:
            raw = self._fernet.decrypt(
                token.encode("ascii"), ttl=self.ttl_seconds,
            )
            payload = json.loads(raw)
        except (InvalidToken, UnicodeEncodeError, ValueError):
            return None
        if not isinstance(payload, dict) or "user_id" not in payload:
            return None
        return payload


def generate_token_key() -> str:
    """Return a fresh key suitable for ``RELAY_TOKEN_KEY``."""
    return Fernet.generate_key().decode()
