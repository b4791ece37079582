from __future__ import annotations

import logging

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import sessionmaker

from context_sync.core.config import settings
from context_sync.db.repositories import IntegrationRepository
from context_sync.db.session import SessionLocal, session_scope
from context_sync.models.models import Provider

LOGGER = logging.getLogger(__name__)


class IntegrationCredentialStore:
    """Resolves decrypted provider access tokens for a workspace."""

    def __init__(self, session_factory: sessionmaker = SessionLocal, encryption_key: str | None = None):
        self._session_factory = session_factory
        key = encryption_key if encryption_key is not None else settings.TOKEN_ENCRYPTION_KEY
        self._fernet = Fernet(key.encode("ascii")) if key else None

    def encrypt(self, token: str) -> str:
        if self._fernet is None:
            raise RuntimeError("TOKEN_ENCRYPTION_KEY is not configured")
        return self._fernet.encrypt(token.encode("utf-8")).decode("ascii")

    def get_access_token(self, workspace_id: str, provider: Provider) -> str | None:
        with session_scope(self._session_factory) as db:
            integration = IntegrationRepository(db).get(workspace_id, provider)
            if integration is None or not integration.access_token:
                return None
            ciphertext = integration.access_token
        if self._fernet is None:
            LOGGER.warning("credential_key_missing", extra={"workspace_id": workspace_id, "provider": provider.value})
            return None
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError, UnicodeError):
            LOGGER.warning("credential_decrypt_failed", extra={"workspace_id": workspace_id, "provider": provider.value})
            return None
