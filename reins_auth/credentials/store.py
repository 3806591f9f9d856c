"""
Encrypted Credential Store - checksum-tracked CRUD over credential records.

The whole store lives in one file holding an ``EncryptedPayload``; its
plaintext is the JSON-serialized ``CredentialStoreState``. Each record's
secret is additionally encrypted on its own, so listing records never needs
the secrets in plaintext.

Usage:
    store = EncryptedCredentialStore(encryption_secret="...", file_path=path)

    record = await store.set(CredentialRecordInput(
        provider="anthropic",
        type=CredentialType.API_KEY,
        payload={"key": "sk-ant-..."},
    ))
    records = await store.list(CredentialQuery(provider="anthropic"))
    payload = await store.decrypt_payload(record)

Write protocol:
    load -> mutate -> save runs under a per-instance asyncio.Lock, so two
    concurrent ``set`` calls never interleave. A missing file reads as an
    empty store; a file that cannot be parsed or decrypted raises and is left
    untouched on disk.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from reins_auth.credentials.cipher import DERIVATION_ITERATIONS, EncryptedPayload, SecretCipher
from reins_auth.credentials.models import (
    STATE_VERSION,
    CredentialQuery,
    CredentialRecord,
    CredentialRecordInput,
    CredentialStoreState,
    SyncEnvelope,
    build_checksum,
    normalize_identifier,
    utc_now,
)
from reins_auth.errors import (
    CredentialDecryptionError,
    CredentialPersistenceError,
    CredentialValidationError,
)
from reins_auth.utils.io import atomic_write

if TYPE_CHECKING:
    from reins_auth.config import AuthConfig


DIRECTORY_MODE = 0o700
FILE_MODE = 0o600


def create_credential_id() -> str:
    return f"cred_{uuid.uuid4().hex}"


class EncryptedCredentialStore:
    """
    Encrypted, checksum-tracked credential repository.

    All public methods are coroutines. Crypto and file I/O run in worker
    threads via ``asyncio.to_thread`` so PBKDF2 does not stall the loop.
    """

    def __init__(
        self,
        encryption_secret: str,
        file_path: str | Path,
        iterations: int = DERIVATION_ITERATIONS,
        logger: logging.Logger | None = None,
    ):
        """
        Initialize the store.

        Args:
            encryption_secret: Secret the file and payload keys are derived from.
            file_path: Location of the encrypted store file.
            iterations: PBKDF2 iteration count (minimum 100,000).
            logger: Log sink; defaults to this module's logger.
        """
        self._cipher = SecretCipher(encryption_secret, iterations)
        self._file_path = Path(file_path).expanduser()
        self._write_lock = asyncio.Lock()
        self._logger = logger or logging.getLogger(__name__)

    @classmethod
    def with_config(
        cls,
        config: AuthConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> EncryptedCredentialStore:
        """
        Build a store from ``AuthConfig`` (defaults to ``load_auth_config()``).

        Raises:
            CredentialValidationError: if no encryption secret is configured.
        """
        from reins_auth.config import CREDENTIAL_KEY_ENV, load_auth_config

        config = config or load_auth_config()
        if not config.encryption_secret:
            raise CredentialValidationError(
                f"No credential encryption key configured. Set {CREDENTIAL_KEY_ENV}."
            )
        return cls(
            encryption_secret=config.encryption_secret,
            file_path=config.credential_file,
            logger=logger,
        )

    @property
    def file_path(self) -> Path:
        return self._file_path

    # === RECORD OPERATIONS ===

    async def set(self, input: CredentialRecordInput) -> CredentialRecord:
        """
        Create or replace a credential record.

        ``created_at`` and ``sync.synced_at`` survive updates to the same id;
        re-setting a revoked id makes it active again.
        """
        provider = normalize_identifier(input.provider)
        if not provider:
            raise CredentialValidationError("Credential provider is required")

        encrypted = await asyncio.to_thread(self._cipher.encrypt_json, input.payload)

        async with self._write_lock:
            state = await self._load_state()
            now = utc_now()
            record_id = (input.id or "").strip() or create_credential_id()
            previous = state.records.get(record_id)

            record = CredentialRecord(
                id=record_id,
                provider=provider,
                type=input.type,
                account_id=input.account_id,
                metadata=input.metadata,
                encrypted_payload=encrypted,
                created_at=previous.created_at if previous else now,
                updated_at=now,
                sync=SyncEnvelope(
                    checksum="",
                    updated_at=now,
                    synced_at=previous.sync.synced_at if previous else None,
                ),
            )
            state.records[record_id] = record
            saved = await self._save_state(state)

        self._logger.info(
            f"Stored credential '{record_id}' for provider '{provider}'",
            extra={"event": "credential_set", "provider": provider},
        )
        return saved.records[record_id].model_copy(deep=True)

    async def get(self, query: CredentialQuery | None = None) -> CredentialRecord | None:
        """Return the first (oldest) record matching ``query``, or None."""
        records = await self.list(query)
        return records[0] if records else None

    async def list(self, query: CredentialQuery | None = None) -> list[CredentialRecord]:
        """Return matching records ordered by ``created_at`` ascending."""
        query = query or CredentialQuery()
        state = await self._load_state()
        matched = [record for record in state.records.values() if query.matches(record)]
        matched.sort(key=lambda record: record.created_at)
        return [record.model_copy(deep=True) for record in matched]

    async def revoke(self, credential_id: str) -> bool:
        """
        Mark a record revoked.

        Returns:
            True if the record was active and is now revoked; False if it was
            missing or already revoked.
        """
        record_id = credential_id.strip()
        if not record_id:
            raise CredentialValidationError("Credential id is required")

        async with self._write_lock:
            state = await self._load_state()
            record = state.records.get(record_id)
            if record is None or record.is_revoked:
                return False

            now = utc_now()
            state.records[record_id] = record.model_copy(update={"revoked_at": now, "updated_at": now})
            await self._save_state(state)

        self._logger.info(
            f"Revoked credential '{record_id}'",
            extra={"event": "credential_revoked", "provider": record.provider},
        )
        return True

    async def decrypt_payload(self, record: CredentialRecord) -> Any:
        """Decrypt a record's secret payload."""
        return await asyncio.to_thread(self._cipher.decrypt_json, record.encrypted_payload)

    async def get_envelope(self) -> SyncEnvelope:
        """Snapshot of the store-wide sync envelope."""
        state = await self._load_state()
        return state.envelope.model_copy()

    async def mark_synced(self, synced_at: datetime | None = None) -> SyncEnvelope:
        """Record a successful sync. The checksum is unchanged."""
        async with self._write_lock:
            state = await self._load_state()
            stamp = synced_at or utc_now()
            state.records = {
                record_id: record.model_copy(
                    update={"sync": record.sync.model_copy(update={"synced_at": stamp})}
                )
                for record_id, record in state.records.items()
            }
            state.envelope = state.envelope.model_copy(update={"synced_at": stamp})
            saved = await self._save_state(state, preserve_sync=True)
        return saved.envelope.model_copy()

    # === PERSISTENCE ===

    def _empty_state(self) -> CredentialStoreState:
        return CredentialStoreState(
            version=STATE_VERSION,
            records={},
            envelope=SyncEnvelope(checksum=build_checksum({}), updated_at=utc_now()),
        )

    async def _load_state(self) -> CredentialStoreState:
        return await asyncio.to_thread(self._read_state)

    def _read_state(self) -> CredentialStoreState:
        path = self._file_path
        if not path.exists():
            return self._empty_state()

        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as e:
            raise CredentialPersistenceError(
                f"Unable to read credential store file: {path}", path, e
            ) from e

        try:
            file_payload = EncryptedPayload.model_validate_json(raw)
        except ValidationError as e:
            raise CredentialDecryptionError(
                f"Credential store file payload is invalid: {path}", e
            ) from e

        plaintext = self._cipher.decrypt(file_payload)

        try:
            return CredentialStoreState.model_validate_json(plaintext)
        except ValidationError as e:
            raise CredentialDecryptionError(
                f"Credential store state is invalid: {path}", e
            ) from e

    async def _save_state(
        self,
        state: CredentialStoreState,
        preserve_sync: bool = False,
    ) -> CredentialStoreState:
        now = utc_now()
        checksum = build_checksum(state.records)
        previous_synced_at = state.envelope.synced_at
        envelope = SyncEnvelope(
            version=STATE_VERSION,
            checksum=checksum,
            updated_at=state.envelope.updated_at if preserve_sync else now,
            synced_at=previous_synced_at,
        )
        records = {
            record_id: record.model_copy(
                update={
                    "sync": SyncEnvelope(
                        version=STATE_VERSION,
                        checksum=checksum,
                        updated_at=envelope.updated_at,
                        synced_at=record.sync.synced_at,
                    )
                }
            )
            for record_id, record in state.records.items()
        }
        next_state = CredentialStoreState(version=STATE_VERSION, records=records, envelope=envelope)
        await asyncio.to_thread(self._write_state, next_state)
        return next_state

    def _write_state(self, state: CredentialStoreState) -> None:
        file_payload = self._cipher.encrypt(state.model_dump_json())

        directory = self._file_path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True, mode=DIRECTORY_MODE)
            if os.name != "nt":
                os.chmod(directory, DIRECTORY_MODE)
        except OSError as e:
            raise CredentialPersistenceError(
                f"Unable to create credential store directory: {directory}", directory, e
            ) from e

        try:
            with atomic_write(self._file_path, file_mode=FILE_MODE) as f:
                f.write(json.dumps(file_payload.model_dump()))
        except OSError as e:
            raise CredentialPersistenceError(
                f"Unable to persist credential store file: {self._file_path}", self._file_path, e
            ) from e

        self._logger.debug(
            f"Wrote credential store ({len(state.records)} record(s)) to {self._file_path}",
            extra={"event": "credential_store_saved"},
        )
