"""Credential encryption helpers.

Device and gateway passwords are stored encrypted in the inventory files. The
Fernet key is read from the ``LINKWATCH_ENCRYPTION_KEY`` environment variable
when set, otherwise from ``config/secret.key``; the key file is generated on
first use so a fresh installation works without manual setup.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

ENV_KEY = "LINKWATCH_ENCRYPTION_KEY"
PROJECT_ROOT = Path(__file__).resolve().parents[3]
DEFAULT_KEY_PATH = PROJECT_ROOT / "config" / "secret.key"


class CredentialError(ValueError):
    """Raised when a credential cannot be encrypted or decrypted."""


class CredentialCodec:
    """Opaque encrypt/decrypt pair for stored credentials."""

    def __init__(self, key: bytes) -> None:
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as exc:
            raise CredentialError("Encryption key is not a valid Fernet key.") from exc

    def encrypt(self, plaintext: str) -> str:
        """Return the ciphertext for ``plaintext`` as text."""

        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """Return the plaintext for a value produced by :meth:`encrypt`."""

        if not ciphertext:
            return ""
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            raise CredentialError("Unable to decrypt stored credential.") from exc


def _key_from_file(path: Path) -> bytes:
    if path.exists():
        key = path.read_bytes().strip()
        logger.debug("encryption key loaded path=%s", path)
        return key

    path.parent.mkdir(parents=True, exist_ok=True)
    key = Fernet.generate_key()
    path.write_bytes(key + b"\n")
    try:
        path.chmod(0o600)
    except OSError:  # pragma: no cover - platform dependent
        logger.warning("unable to restrict permissions on key file path=%s", path)
    logger.info("generated new encryption key path=%s", path)
    return key


def load_codec(key_path: Path = DEFAULT_KEY_PATH) -> CredentialCodec:
    """Build the codec from the environment or the key file.

    Resolution order:
    1. Environment variable ``LINKWATCH_ENCRYPTION_KEY``
    2. ``config/secret.key`` (created when missing)
    """

    env_value = os.getenv(ENV_KEY)
    if env_value:
        return CredentialCodec(key=env_value.strip().encode("ascii"))
    return CredentialCodec(key=_key_from_file(key_path))
