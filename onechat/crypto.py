"""At-rest encryption for provider API keys and service tokens.

Values are encrypted with Fernet from the ``cryptography`` library and
stored as ``ENC:<token>``.  Values without the prefix are treated as
plaintext, which lets an older config file be read once and rewritten
encrypted.

The Fernet key lives in ``<config dir>/.key``, next to but separate from
``config.json``, and is created on first use with owner-only permissions.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

ENC_PREFIX = "ENC:"

_config_dir = Path(os.environ.get("ONECHAT_CONFIG_DIR", Path.home() / ".onechat"))
_key_file = _config_dir / ".key"

_fernet: Optional[Fernet] = None


def set_strict_permissions(filepath: Path) -> None:
    """Restrict *filepath* to owner read/write; failures are logged, not raised."""
    try:
        os.chmod(str(filepath), 0o600)
    except FileNotFoundError:
        logger.warning("Cannot set permissions: %s does not exist", filepath)
    except OSError as e:
        logger.warning("Failed to set permissions on %s: %s", filepath, e)


def _get_or_create_key() -> bytes:
    _key_file.parent.mkdir(parents=True, exist_ok=True)

    if _key_file.exists():
        key = _key_file.read_bytes().strip()
        try:
            Fernet(key)
            return key
        except ValueError:
            logger.warning("Existing key file %s is invalid, generating a new one", _key_file)

    key = Fernet.generate_key()
    _key_file.write_bytes(key)
    set_strict_permissions(_key_file)
    logger.info("Generated new encryption key at %s", _key_file)
    return key


def _get_fernet() -> Fernet:
    global _fernet
    if _fernet is None:
        _fernet = Fernet(_get_or_create_key())
    return _fernet


def is_encrypted(value: str) -> bool:
    return bool(value) and value.startswith(ENC_PREFIX)


def encrypt_value(plaintext: str) -> str:
    """Encrypt a non-empty string to ``"ENC:<fernet-token>"``."""
    if not plaintext or is_encrypted(plaintext):
        return plaintext
    token = _get_fernet().encrypt(plaintext.encode("utf-8"))
    return ENC_PREFIX + token.decode("ascii")


def decrypt_value(ciphertext: str) -> str:
    """Decrypt an ``ENC:`` value; plaintext passes through unchanged.

    A value that cannot be decrypted (key rotated or file corrupted) comes
    back as ``""`` so the user is prompted to enter the key again.
    """
    if not is_encrypted(ciphertext):
        return ciphertext
    token = ciphertext[len(ENC_PREFIX):]
    try:
        return _get_fernet().decrypt(token.encode("ascii")).decode("utf-8")
    except InvalidToken:
        logger.warning(
            "Failed to decrypt a stored secret (key may have changed); treating it as empty"
        )
        return ""


def encrypt_dict_values(d: dict[str, str]) -> dict[str, str]:
    return {k: encrypt_value(v) for k, v in d.items()}


def decrypt_dict_values(d: dict[str, str]) -> dict[str, str]:
    return {k: decrypt_value(v) for k, v in d.items()}
