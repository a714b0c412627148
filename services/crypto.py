from __future__ import annotations

import base64
import json

from cryptography.fernet import Fernet, InvalidToken

from data.store import BaseStore
from engine.errors import DcaError


def build_fernet(key: str | None) -> Fernet | None:
    if not key:
        return None
    raw = key.encode("utf-8")
    if len(raw) == 32:
        raw = base64.urlsafe_b64encode(raw)
    return Fernet(raw)


class CredentialVault:
    """Per-owner gateway credentials, Fernet-encrypted at rest when a key is configured."""

    def __init__(self, store: BaseStore, fernet: Fernet | None) -> None:
        self.store = store
        self.fernet = fernet

    def _encrypt(self, payload: str) -> str:
        if not self.fernet:
            return payload
        return self.fernet.encrypt(payload.encode("utf-8")).decode("utf-8")

    def _decrypt(self, payload: str) -> str:
        if not self.fernet:
            return payload
        try:
            return self.fernet.decrypt(payload.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise DcaError("Stored credentials cannot be decrypted with the configured key") from exc

    def save(self, owner: str, gateway: str, credentials: dict[str, str]) -> None:
        self.store.ensure_owner(owner)
        self.store.set_credentials(owner, gateway, self._encrypt(json.dumps(credentials)))

    def load(self, owner: str, gateway: str) -> dict[str, str] | None:
        stored = self.store.get_credentials(owner, gateway)
        if stored is None:
            return None
        return json.loads(self._decrypt(stored))
