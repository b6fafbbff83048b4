"""Read grants built by re-wrapping a file's data key for a recipient."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Dict, List

from ..crypto import b64decode, b64encode
from ..exceptions import InvalidRecordState, KeyUnwrapFailed, RecordNotFound
from ..models import ShareGrant, normalize_identity, utcnow
from ..session import VaultSession
from .base import BaseService
from .download_service import DownloadService
from .record_store import RecordStore


@dataclass
class SharingService(BaseService):
    """The shared record itself is never modified; each grant carries its own
    copy of the data key wrapped under the recipient's key-encrypting key."""

    record_store: RecordStore
    downloads: DownloadService
    _grants: Dict[str, ShareGrant] = field(default_factory=dict)

    def share(self, session: VaultSession, record_id: str, recipient: str, permission: str = "read") -> ShareGrant:
        owner = session.require_identity()
        recipient_id = normalize_identity(recipient)
        if not recipient_id:
            raise ValueError("Recipient identity must not be empty")
        if recipient_id == owner:
            raise ValueError("Cannot share a file with its owner")
        record = self.record_store.require(record_id)
        if record.owner_id != owner:
            raise RecordNotFound(f"Record {record_id} not found")
        if record.is_folder or record.is_trashed:
            raise InvalidRecordState("Only files outside the trash can be shared")

        cipher = self.downloads.cipher
        kdf = self.downloads.key_derivation
        try:
            wrapped = b64decode(record.wrapped_key)
            key_iv = b64decode(record.key_iv)
        except ValueError as exc:
            raise KeyUnwrapFailed("You may not have permission to access this file") from exc
        dek = cipher.unwrap_key(wrapped, key_iv, kdf.derive_kek(owner))
        rewrapped = cipher.wrap_key(dek, kdf.derive_kek(recipient_id))
        del dek

        grant = ShareGrant(
            share_id=str(uuid.uuid4()),
            record_id=record.id,
            owner_id=owner,
            recipient_id=recipient_id,
            display_name=record.display_name,
            content_type=record.content_type,
            content_id=record.content_id,
            file_iv=record.file_iv,
            wrapped_key=b64encode(rewrapped.ciphertext),
            key_iv=b64encode(rewrapped.iv),
            permission=permission,
        )
        self._grants[grant.share_id] = grant
        self.emit_event("share_granted", record_id=record.id, share_id=grant.share_id, permission=permission)
        return grant

    def list_sent(self, session: VaultSession) -> List[ShareGrant]:
        owner = session.require_identity()
        return [grant for grant in self._grants.values() if grant.owner_id == owner and grant.is_active]

    def list_received(self, session: VaultSession) -> List[ShareGrant]:
        recipient = session.require_identity()
        return [grant for grant in self._grants.values() if grant.recipient_id == recipient and grant.is_active]

    def revoke(self, session: VaultSession, share_id: str) -> ShareGrant:
        owner = session.require_identity()
        grant = self._grants.get(share_id)
        if grant is None or grant.owner_id != owner:
            raise RecordNotFound(f"Share {share_id} not found")
        if grant.is_active:
            grant.revoked_at = utcnow()
            self.emit_event("share_revoked", record_id=grant.record_id, share_id=share_id)
        return grant

    def open_shared(self, session: VaultSession, share_id: str) -> bytes:
        recipient = session.require_identity()
        grant = self._grants.get(share_id)
        if grant is None or grant.recipient_id != recipient or not grant.is_active:
            raise RecordNotFound(f"Share {share_id} not found")
        return self.downloads.open_envelope(grant, recipient)
