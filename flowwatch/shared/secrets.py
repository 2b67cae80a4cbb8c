"""At-rest encryption for instance API keys."""

from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from flowwatch.control_plane.errors import CredentialError


class CredentialCipher:
    """Fernet wrapper; non-Fernet passphrases are stretched with SHA-256."""

    def __init__(self, key: str) -> None:
        raw = (key or "").strip()
        if not raw:
            raise CredentialError("Missing FLOWWATCH_CREDENTIALS_KEY", reason_code="missing_key")
        self._fernet = _build_fernet(raw)

    def encrypt(self, secret: str) -> str:
        value = (secret or "").strip()
        if not value:
            raise CredentialError("Cannot encrypt an empty credential", reason_code="empty_secret")
        return self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(str(token or "").encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise CredentialError(
                "Stored credential cannot be decrypted with the configured key",
                reason_code="credential_undecryptable",
            ) from exc


def _build_fernet(raw: str) -> Fernet:
    try:
        return Fernet(raw.encode("utf-8"))
    except ValueError:
        digest = hashlib.sha256(raw.encode("utf-8")).digest()
        return Fernet(base64.urlsafe_b64encode(digest))


def redact(secret: str | None) -> str:
    if not secret:
        return "unset"
    if len(secret) <= 8:
        return "***"
    return f"{secret[:4]}...{secret[-4:]}"
