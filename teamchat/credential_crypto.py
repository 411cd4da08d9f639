"""
Fernet encryption for team provider credentials (access tokens, app secrets).

CREDENTIALS_ENC_KEY holds one or more comma-separated Fernet keys. The first
key encrypts; every key is tried on decrypt, so a new key can be prepended and
stored values re-encrypted with rotate_secret before the old key is removed.
"""

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from teamchat.config import CREDENTIALS_ENC_KEY


def _fernet(keys: str | None = None) -> MultiFernet:
    raw = [k.strip() for k in (CREDENTIALS_ENC_KEY if keys is None else keys).split(",") if k.strip()]
    if not raw:
        raise ValueError(
            "CREDENTIALS_ENC_KEY is not set. Generate a key with:\n"
            '  python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"'
        )
    return MultiFernet([Fernet(k.encode("utf-8")) for k in raw])


def encrypt_secret(value: str, keys: str | None = None) -> str:
    return _fernet(keys).encrypt(value.encode("utf-8")).decode("ascii")


def decrypt_secret(encrypted: str | None, keys: str | None = None) -> str:
    """Decrypt a stored credential; empty input stays empty."""
    if not encrypted:
        return ""
    try:
        return _fernet(keys).decrypt(encrypted.encode("ascii")).decode("utf-8")
    except InvalidToken as e:
        raise ValueError("Failed to decrypt team credential; no configured key matches.") from e


def rotate_secret(encrypted: str | None, keys: str | None = None) -> str:
    """Re-encrypt a stored credential under the primary key."""
    if not encrypted:
        return ""
    try:
        return _fernet(keys).rotate(encrypted.encode("ascii")).decode("ascii")
    except InvalidToken as e:
        raise ValueError("Failed to rotate team credential; no configured key matches.") from e
