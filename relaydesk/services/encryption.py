"""Credential encryption for tenant backend keys stored in the registry."""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from relaydesk.config import settings

# Blob fields that hold secrets (current and legacy names)
SECRET_FIELDS = (
    "anon_key",
    "service_role_key",
    "supabase_anon_key",
    "supabase_service_role_key",
    "database_key",
)


class CredentialDecryptError(Exception):
    """Stored credentials could not be decrypted with the configured key."""


def _get_fernet(key: Optional[str] = None) -> Fernet:
    """Get Fernet instance for encryption/decryption."""
    key = key or settings.credential_encryption_key
    if not key:
        raise ValueError("CREDENTIAL_ENCRYPTION_KEY not configured")
    return Fernet(key.encode())


def generate_key() -> str:
    return Fernet.generate_key().decode()


def encrypt_value(value: str, key: Optional[str] = None) -> str:
    """Encrypt a single secret for storage."""
    return _get_fernet(key).encrypt(value.encode()).decode()


def decrypt_value(token: str, key: Optional[str] = None) -> str:
    """Decrypt a single stored secret."""
    try:
        return _get_fernet(key).decrypt(token.encode()).decode()
    except (InvalidToken, ValueError) as e:
        raise CredentialDecryptError(f"Could not decrypt credential: {type(e).__name__}") from e


def is_encrypted(blob: Optional[Dict[str, Any]]) -> bool:
    return bool(blob) and bool(blob.get("_encrypted"))


def encrypt_credentials(blob: Dict[str, Any], key: Optional[str] = None) -> Dict[str, Any]:
    """
    Encrypt the secret fields of a credential blob.

    Non-secret fields (the backend URL) stay readable. The result carries
    ``_encrypted: True`` and an ``_encrypted_at`` timestamp. Already
    encrypted blobs are returned unchanged.
    """
    if is_encrypted(blob):
        return dict(blob)
    fernet = _get_fernet(key)
    out = dict(blob)
    for field_name in SECRET_FIELDS:
        if out.get(field_name):
            out[field_name] = fernet.encrypt(str(out[field_name]).encode()).decode()
    out["_encrypted"] = True
    out["_encrypted_at"] = datetime.now(timezone.utc).isoformat()
    return out


def decrypt_credentials(blob: Dict[str, Any], key: Optional[str] = None) -> Dict[str, Any]:
    """
    Decrypt a stored credential blob.

    Blobs without the ``_encrypted`` marker are plaintext and returned as-is.
    Raises CredentialDecryptError if any secret field fails to decrypt.
    """
    if not is_encrypted(blob):
        return dict(blob)
    out = {k: v for k, v in blob.items() if k not in ("_encrypted", "_encrypted_at")}
    for field_name in SECRET_FIELDS:
        if out.get(field_name):
            out[field_name] = decrypt_value(out[field_name], key)
    return out
