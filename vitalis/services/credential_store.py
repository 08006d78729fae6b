"""
Credential store

Durable OAuth credentials keyed by (user_id, provider). Disconnecting keeps
the row and sets ``disconnected_at``; a disconnected credential is invisible
to ``get`` until the user reconnects.
"""

import logging
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from vitalis.database import SessionLocal
from vitalis.models import ProviderCredentialRecord
from vitalis.services.errors import PersistenceError
from vitalis.services.persistence import dialect_insert
from vitalis.services.sync_types import Credential, ProviderId, ensure_utc, utcnow

logger = logging.getLogger(__name__)


class CredentialStore:
    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    def get(self, user_id: str, provider: ProviderId) -> Optional[Credential]:
        try:
            with self._session_factory() as session:
                row = session.execute(
                    select(ProviderCredentialRecord).where(
                        ProviderCredentialRecord.user_id == user_id,
                        ProviderCredentialRecord.provider == provider.value,
                        ProviderCredentialRecord.disconnected_at.is_(None),
                    )
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Failed to read {provider.value} credential for user {user_id}: {type(e).__name__}")
            raise PersistenceError(f"Credential read failed: {type(e).__name__}") from e

        if row is None:
            return None

        return Credential(
            provider=provider,
            access_token=row.access_token,
            refresh_token=row.refresh_token,
            expires_at=ensure_utc(row.expires_at),
            scopes=row.scopes.split() if row.scopes else [],
            external_account_id=row.external_account_id,
            token_type=row.token_type or "Bearer",
        )

    def upsert(self, user_id: str, provider: ProviderId, credential: Credential) -> None:
        """Write ``credential`` as the active credential; clears any disconnect."""
        fields = {
            "access_token": credential.access_token,
            "refresh_token": credential.refresh_token,
            "token_type": credential.token_type,
            "expires_at": ensure_utc(credential.expires_at),
            "scopes": " ".join(credential.scopes) if credential.scopes else None,
            "external_account_id": credential.external_account_id,
            "disconnected_at": None,
        }

        session = self._session_factory()
        try:
            stmt = dialect_insert(session, ProviderCredentialRecord.__table__).values(
                user_id=user_id, provider=provider.value, **fields
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id", "provider"],
                set_={**fields, "updated_at": func.now()},
            )
            session.execute(stmt)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to store {provider.value} credential for user {user_id}: {type(e).__name__}")
            raise PersistenceError(f"Credential write failed: {type(e).__name__}") from e
        finally:
            session.close()

    def mark_disconnected(self, user_id: str, provider: ProviderId) -> bool:
        """Logically delete the credential. Returns False when none was active."""
        session = self._session_factory()
        try:
            result = session.execute(
                update(ProviderCredentialRecord)
                .where(
                    ProviderCredentialRecord.user_id == user_id,
                    ProviderCredentialRecord.provider == provider.value,
                    ProviderCredentialRecord.disconnected_at.is_(None),
                )
                .values(disconnected_at=utcnow(), updated_at=func.now())
            )
            session.commit()
            return (result.rowcount or 0) > 0
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to disconnect {provider.value} credential for user {user_id}: {type(e).__name__}")
            raise PersistenceError(f"Credential disconnect failed: {type(e).__name__}") from e
        finally:
            session.close()
