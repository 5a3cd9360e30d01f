"""At-rest encryption for provider API keys.

Uses Fernet symmetric encryption (AES-128-CBC + HMAC-SHA256) from the
``cryptography`` library.  Encrypted values are prefixed with ``ENC:`` so
that plaintext configs written by older versions are transparently
migrated on the next save.

The Fernet key lives at ``<config_dir>/.key`` with owner-only permissions,
separate from ``config.json``.
"""

import logging
import os
import platform
import subprocess
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

_ENC_PREFIX = "ENC:"

# Cached Fernet instance, keyed by the key file it was loaded from
_fernet: Optional[Fernet] = None
_fernet_key_file: Optional[Path] = None


def set_strict_permissions(filepath: Path) -> None:
    """Set owner-only read/write permissions on *filepath*.

    On Windows this uses ``icacls``; on POSIX it uses ``chmod 600``.
    Failures are logged as warnings.
    """
    try:
        if platform.system() == "Windows":
            username = os.environ.get("USERNAME", "")
            if not username:
                logger.warning(
                    "Cannot set permissions on %s: USERNAME env var not set",
                    filepath,
                )
                return
            result = subprocess.run(
                ["icacls", str(filepath), "/inheritance:r", "/grant:r", f"{username}:F"],
                capture_output=True,
                text=True,
                timeout=5,
            )
            if result.returncode != 0:
                logger.warning(
                    "icacls failed for %s: %s", filepath, result.stderr.strip()
                )
        else:
            os.chmod(str(filepath), 0o600)
    except FileNotFoundError:
        logger.warning("Cannot set permissions: %s does not exist", filepath)
    except subprocess.TimeoutExpired:
        logger.warning("Timeout setting permissions on %s", filepath)
    except OSError as e:
        logger.warning("Failed to set permissions on %s: %s", filepath, e)


def _key_file() -> Path:
    from .config import get_config_dir

    return get_config_dir() / ".key"


def _get_or_create_key(key_file: Path) -> bytes:
    """Load the Fernet key from disk, or generate and persist a new one."""
    key_file.parent.mkdir(parents=True, exist_ok=True)

    if key_file.exists():
        key = key_file.read_bytes().strip()
        try:
            Fernet(key)  # validate
            return key
        except ValueError:
            logger.warning("Existing .key file is invalid, generating new key")

    key = Fernet.generate_key()
    key_file.write_bytes(key)
    set_strict_permissions(key_file)
    logger.info("Generated new encryption key at %s", key_file)
    return key


def _get_fernet() -> Fernet:
    global _fernet, _fernet_key_file
    key_file = _key_file()
    if _fernet is None or _fernet_key_file != key_file:
        _fernet = Fernet(_get_or_create_key(key_file))
        _fernet_key_file = key_file
    return _fernet


def is_encrypted(value: str) -> bool:
    return bool(value) and value.startswith(_ENC_PREFIX)


def encrypt_value(plaintext: str) -> str:
    """Encrypt a non-empty string into ``"ENC:<fernet-token>"``."""
    if not plaintext or is_encrypted(plaintext):
        return plaintext
    token = _get_fernet().encrypt(plaintext.encode("utf-8"))
    return _ENC_PREFIX + token.decode("ascii")


def decrypt_value(ciphertext: str) -> str:
    """Decrypt an ``"ENC:..."`` string back to plaintext.

    * Values without the ``ENC:`` prefix are returned unchanged.
    * If decryption fails (wrong key / corrupted), returns ``""`` and logs
      a warning so the user can re-enter the key.
    """
    if not is_encrypted(ciphertext):
        return ciphertext
    token = ciphertext[len(_ENC_PREFIX):]
    try:
        return _get_fernet().decrypt(token.encode("ascii")).decode("utf-8")
    except InvalidToken:
        logger.warning(
            "Failed to decrypt an API key (encryption key may have changed). "
            "The value will be treated as empty."
        )
        return ""
