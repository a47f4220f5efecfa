"""Encrypted provider credential storage."""

from __future__ import annotations

import base64
import logging
from typing import TYPE_CHECKING

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from agent_crew.engine.errors import ConfigurationError
from agent_crew.engine.routing import normalize_provider

if TYPE_CHECKING:
    from agent_crew.engine.repository import EngineRepository

logger = logging.getLogger(__name__)

_KDF_SALT = b"agent-crew-credentials"
_KDF_ITERATIONS = 100_000


class CredentialCipher:
    """Fernet cipher keyed by a PBKDF2-derived secret.

    Without a secret the cipher is a pass-through and keys are stored as given.
    """

    def __init__(self, secret: str | None) -> None:
        self._fernet: Fernet | None = None
        if secret:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=_KDF_SALT,
                iterations=_KDF_ITERATIONS,
            )
            self._fernet = Fernet(base64.urlsafe_b64encode(kdf.derive(secret.encode())))

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, value: str) -> str:
        if self._fernet is None or not value:
            return value
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: str) -> str:
        """Decrypt a stored value, raising `ValueError` on a wrong key or corrupted data."""

        if self._fernet is None or not value:
            return value
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken as error:
            raise ValueError("Decryption failed. Invalid key or corrupted data.") from error


class CredentialStore:
    """Resolve and store per-workspace provider API keys."""

    def __init__(self, repository: EngineRepository, cipher: CredentialCipher) -> None:
        self._repository = repository
        self._cipher = cipher

    def store(self, *, workspace_id: str, provider: str, api_key: str) -> None:
        self._repository.upsert_provider_credential(
            workspace_id=workspace_id,
            provider=normalize_provider(provider),
            encrypted_key=self._cipher.encrypt(api_key.strip()),
        )

    def resolve(self, workspace_id: str, provider: str) -> str | None:
        """Decrypted key for the workspace/provider pair, or None when not configured."""

        encrypted = self._repository.get_encrypted_credential(
            workspace_id=workspace_id,
            provider=normalize_provider(provider),
        )
        if encrypted is None:
            return None
        try:
            return self._cipher.decrypt(encrypted)
        except ValueError as error:
            logger.warning(
                "Credential decryption failed for workspace=%s provider=%s",
                workspace_id,
                provider,
            )
            raise ConfigurationError(
                f"Stored API key for provider {provider} could not be decrypted. "
                "Check AGENT_CREW_ENCRYPTION_KEY.",
            ) from error
