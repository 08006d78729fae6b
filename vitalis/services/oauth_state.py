"""
OAuth State Tokens

The ``state`` parameter sent to a provider is a short-lived HS256 JWT that
binds the authorization flow to the initiating user and provider. Tokens are
signed with the active secret and carry its key id in the header, so secrets
can be rotated: previous secrets keep verifying until they are removed from
configuration.
"""

import hashlib
import logging
import secrets
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from jose import jwt, JWTError, ExpiredSignatureError

from vitalis.services.errors import InvalidStateError
from vitalis.services.sync_types import ProviderId, utcnow

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
STATE_PURPOSE = "oauth_state"


def key_id_for(secret: str) -> str:
    return hashlib.sha256(secret.encode()).hexdigest()[:16]


class OAuthStateSigner:
    def __init__(self, signing_secrets: List[str], ttl_seconds: int = 600):
        if not signing_secrets:
            raise ValueError("At least one OAuth state signing secret is required (OAUTH_STATE_SECRET)")
        if ttl_seconds <= 0:
            raise ValueError("OAuth state TTL must be positive")
        self._active_secret = signing_secrets[0]
        self._keys = {key_id_for(s): s for s in signing_secrets}
        self.ttl = timedelta(seconds=ttl_seconds)

    def issue(self, user_id: str, provider: ProviderId, now: Optional[datetime] = None) -> Tuple[str, datetime]:
        """Sign a state token for ``user_id``; returns the token and its expiry."""
        issued_at = now or utcnow()
        expires_at = issued_at + self.ttl
        claims = {
            "sub": user_id,
            "provider": provider.value,
            "purpose": STATE_PURPOSE,
            "nonce": secrets.token_urlsafe(16),
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        token = jwt.encode(
            claims,
            self._active_secret,
            algorithm=ALGORITHM,
            headers={"kid": key_id_for(self._active_secret)},
        )
        return token, expires_at

    def verify(self, token: str, provider: ProviderId, expected_user_id: Optional[str] = None) -> str:
        """
        Validate a state token and return the user id it was issued for.

        Raises InvalidStateError when the token is malformed, signed with an
        unknown key, expired, issued for another provider, or issued for a
        user other than ``expected_user_id``.
        """
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as e:
            raise InvalidStateError(f"Malformed state token: {e}")

        secret = self._keys.get(header.get("kid"))
        if secret is None:
            raise InvalidStateError("State token signed with an unknown key")

        try:
            claims = jwt.decode(token, secret, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise InvalidStateError("State token expired")
        except JWTError as e:
            raise InvalidStateError(f"State token rejected: {e}")

        if claims.get("purpose") != STATE_PURPOSE:
            raise InvalidStateError("Token is not an OAuth state token")
        if claims.get("provider") != provider.value:
            raise InvalidStateError(
                f"State token issued for {claims.get('provider')}, not {provider.value}"
            )

        user_id = claims.get("sub")
        if not user_id or not isinstance(user_id, str):
            raise InvalidStateError("State token has no user")
        if expected_user_id is not None and user_id != expected_user_id:
            logger.warning(f"OAuth state user mismatch for {provider.value}")
            raise InvalidStateError("State token belongs to a different user")

        return user_id
