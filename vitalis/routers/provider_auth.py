"""
Provider Authorization API

OAuth connect/disconnect for health data providers:
- GET    /api/v1/health/auth/{provider}           authorization URL with signed state
- GET    /api/v1/health/auth/{provider}/callback  provider redirect, redirects to the app
- POST   /api/v1/health/auth/{provider}/callback  same exchange, JSON response
- DELETE /api/v1/health/auth/{provider}           disconnect

The callback only accepts a state token issued to the caller's own session.
"""

import asyncio
import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse

from vitalis.config import settings
from vitalis.core.logging import log_audit
from vitalis.dependencies import (
    get_credential_store,
    get_current_user_id,
    get_gateway,
    get_registry,
    get_state_signer,
)
from vitalis.schemas.sync_schemas import (
    AuthorizationUrlResponse,
    CallbackRequest,
    ConnectResponse,
    DisconnectResponse,
)
from vitalis.services.connectors.base import BaseConnector
from vitalis.services.connectors.registry import ConnectorRegistry
from vitalis.services.credential_store import CredentialStore
from vitalis.services.errors import HealthSyncError, PersistenceError
from vitalis.services.oauth_state import OAuthStateSigner
from vitalis.services.persistence import HealthDataGateway
from vitalis.services.sync_types import Credential, DeviceConnectionStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/health", tags=["Health Provider Auth"])


def redirect_uri_for(connector: BaseConnector) -> str:
    base = settings.OAUTH_REDIRECT_BASE_URL.rstrip("/")
    return f"{base}/api/v1/health/auth/{connector.provider.value}/callback"


def app_redirect(provider: str, **params) -> RedirectResponse:
    query = urlencode({"provider": provider, **params})
    return RedirectResponse(url=f"{settings.APP_URL.rstrip('/')}/wearables?{query}", status_code=302)


async def complete_authorization(
    connector: BaseConnector,
    user_id: str,
    code: str,
    state: str,
    signer: OAuthStateSigner,
    credential_store: CredentialStore,
    gateway: HealthDataGateway,
) -> Credential:
    """Verify state, exchange the code and persist the credential and connection."""
    signer.verify(state, connector.provider, expected_user_id=user_id)

    credential = await connector.authenticate(code, redirect_uri_for(connector))

    await asyncio.to_thread(credential_store.upsert, user_id, connector.provider, credential)
    try:
        await asyncio.to_thread(
            gateway.upsert_device_connection,
            user_id,
            connector.provider,
            DeviceConnectionStatus(
                is_connected=True,
                device_name=connector.DISPLAY_NAME,
                manufacturer=connector.MANUFACTURER,
                device_metadata={
                    "scopes": credential.scopes,
                    "external_account_id": credential.external_account_id,
                },
            ),
        )
    except PersistenceError:
        # Never leave an active credential without a connection row
        try:
            await asyncio.to_thread(credential_store.mark_disconnected, user_id, connector.provider)
        except PersistenceError as e:
            logger.error(f"Could not roll back {connector.provider.value} credential for user {user_id}: {e}")
        raise

    log_audit("provider_connected", user_id, {"provider": connector.provider.value})
    return credential


@router.get("/auth/{provider}", response_model=AuthorizationUrlResponse)
async def start_authorization(
    provider: str,
    redirect: bool = Query(False, description="Respond with a 302 to the provider instead of JSON"),
    user_id: str = Depends(get_current_user_id),
    registry: ConnectorRegistry = Depends(get_registry),
    signer: OAuthStateSigner = Depends(get_state_signer),
):
    connector = registry.resolve(provider)
    if not connector.is_configured:
        raise HTTPException(status_code=503, detail=f"{connector.DISPLAY_NAME} integration is not configured")

    state, expires_at = signer.issue(user_id, connector.provider)
    authorization_url = connector.build_authorization_url(state, redirect_uri_for(connector))
    log_audit("provider_authorization_started", user_id, {"provider": connector.provider.value})

    if redirect:
        return RedirectResponse(url=authorization_url, status_code=302)

    return AuthorizationUrlResponse(
        provider=connector.provider.value,
        authorization_url=authorization_url,
        expires_at=expires_at,
    )


@router.get("/auth/{provider}/callback", response_model=None)
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    user_id: str = Depends(get_current_user_id),
    registry: ConnectorRegistry = Depends(get_registry),
    signer: OAuthStateSigner = Depends(get_state_signer),
    credential_store: CredentialStore = Depends(get_credential_store),
    gateway: HealthDataGateway = Depends(get_gateway),
):
    """
    Provider redirect target. Always answers with a redirect back to the app,
    carrying either ``connected=true`` or an ``error`` code.
    """
    connector = registry.resolve(provider)

    if error:
        logger.info(f"{connector.DISPLAY_NAME} authorization declined: {error}")
        return app_redirect(connector.provider.value, error="access_denied")
    if not code or not state:
        return app_redirect(connector.provider.value, error="invalid_request")

    try:
        await complete_authorization(connector, user_id, code, state, signer, credential_store, gateway)
    except HealthSyncError as e:
        logger.warning(f"{connector.DISPLAY_NAME} callback failed for user {user_id}: {e.code}")
        log_audit("provider_connect_failed", user_id, {"provider": connector.provider.value, "error": e.code})
        return app_redirect(connector.provider.value, error=e.code)

    return app_redirect(connector.provider.value, connected="true")


@router.post("/auth/{provider}/callback", response_model=ConnectResponse)
async def oauth_callback_json(
    provider: str,
    payload: CallbackRequest,
    user_id: str = Depends(get_current_user_id),
    registry: ConnectorRegistry = Depends(get_registry),
    signer: OAuthStateSigner = Depends(get_state_signer),
    credential_store: CredentialStore = Depends(get_credential_store),
    gateway: HealthDataGateway = Depends(get_gateway),
):
    connector = registry.resolve(provider)
    credential = await complete_authorization(
        connector, user_id, payload.code, payload.state, signer, credential_store, gateway
    )
    return ConnectResponse(
        success=True,
        provider=connector.provider.value,
        external_account_id=credential.external_account_id,
        message=f"{connector.DISPLAY_NAME} connected",
    )


@router.delete("/auth/{provider}", response_model=DisconnectResponse)
async def disconnect_provider(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    registry: ConnectorRegistry = Depends(get_registry),
    credential_store: CredentialStore = Depends(get_credential_store),
    gateway: HealthDataGateway = Depends(get_gateway),
):
    connector = registry.resolve(provider)

    was_connected = await asyncio.to_thread(credential_store.mark_disconnected, user_id, connector.provider)
    await asyncio.to_thread(
        gateway.upsert_device_connection,
        user_id,
        connector.provider,
        DeviceConnectionStatus(is_connected=False),
    )

    log_audit("provider_disconnected", user_id, {"provider": connector.provider.value, "reason": "user_request"})
    return DisconnectResponse(success=True, provider=connector.provider.value, was_connected=was_connected)
