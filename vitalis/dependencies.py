import logging
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from vitalis.config import settings
from vitalis.services.connectors.registry import ConnectorRegistry
from vitalis.services.credential_store import CredentialStore
from vitalis.services.oauth_state import OAuthStateSigner
from vitalis.services.persistence import HealthDataGateway
from vitalis.services.sync_orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def verify_session_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Verify a session JWT issued by the application's auth layer.
    Sessions are HS256 tokens signed with SESSION_SECRET.
    """
    secret = settings.SESSION_SECRET
    if not secret:
        logger.error("SESSION_SECRET is not configured; rejecting session token")
        return None
    try:
        return jwt.decode(token, secret, algorithms=["HS256"])
    except JWTError as e:
        logger.warning(f"Session token verification failed: {type(e).__name__}")
        return None


async def get_current_user_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """
    Resolve the caller's user id from the Authorization header or the
    session cookie. Never falls back to an anonymous or default user.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Authentication required",
        headers={"WWW-Authenticate": "Bearer"},
    )

    token = credentials.credentials if credentials else request.cookies.get(settings.SESSION_COOKIE_NAME)
    if not token:
        raise credentials_exception

    payload = verify_session_token(token)
    if payload is None:
        raise credentials_exception

    user_id = payload.get("sub") or payload.get("userId")
    if user_id is None or not isinstance(user_id, str):
        raise credentials_exception

    return user_id


def get_registry(request: Request) -> ConnectorRegistry:
    return request.app.state.registry


def get_state_signer(request: Request) -> OAuthStateSigner:
    return request.app.state.state_signer


def get_credential_store(request: Request) -> CredentialStore:
    return request.app.state.credential_store


def get_gateway(request: Request) -> HealthDataGateway:
    return request.app.state.gateway


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator
