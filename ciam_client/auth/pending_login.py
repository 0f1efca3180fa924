"""
Durable client-side storage for the pending-login context and the
remembered username.

The pending-login context survives page reloads and process restarts between
login steps, so it is written to disk encrypted with Fernet. The encryption
key lives in the system keyring when one is usable, otherwise in a key file
readable only by the owner.
"""

import os
import json
import base64
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ciam_shared.exceptions import StorageError, ErrorCode
from ciam_shared.interfaces import IPendingLoginStore, IUsernameStore
from ciam_shared.models import PendingLoginContext
from ciam_client.config import default_storage_dir

logger = logging.getLogger(__name__)


def _write_private_file(path: Path, data: bytes) -> None:
    """Atomically replace ``path`` with ``data``, readable by the owner only."""
    tmp_path = path.with_suffix(path.suffix + '.tmp')
    fd = os.open(str(tmp_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'wb') as f:
        f.write(data)
    os.replace(tmp_path, path)
    os.chmod(path, 0o600)


class EncryptionKeyProvider:
    """
    Supplies the Fernet key shared by every store instance using the same
    directory and keyring service.
    """

    KEYRING_ENTRY = "pending_login_key"

    def __init__(self, storage_dir: Path, service_name: str = "ciam-client", use_keyring: bool = True):
        self.service_name = service_name
        self.key_path = storage_dir / 'pending_login.key'
        self.keyring_available = use_keyring and self._check_keyring_availability()
        self._key: Optional[bytes] = None

    def _check_keyring_availability(self) -> bool:
        """Check if system keyring is available."""
        try:
            import keyring
            test_key = f"{self.service_name}_test"
            keyring.set_password(self.service_name, test_key, "test")
            result = keyring.get_password(self.service_name, test_key)
            keyring.delete_password(self.service_name, test_key)
            return result == "test"
        except Exception as e:
            logger.debug(f"Keyring not available: {e}")
            return False

    def _generate_key(self) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=os.urandom(16),
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(os.urandom(32)))

    def _load_key(self) -> Optional[bytes]:
        if self.keyring_available:
            import keyring
            try:
                stored_key = keyring.get_password(self.service_name, self.KEYRING_ENTRY)
            except Exception as e:
                logger.warning(f"Failed to get encryption key from keyring: {e}")
                stored_key = None
            if stored_key:
                return stored_key.encode()

        if self.key_path.exists():
            return self.key_path.read_bytes().strip()
        return None

    def _store_key(self, key: bytes) -> None:
        if self.keyring_available:
            import keyring
            try:
                keyring.set_password(self.service_name, self.KEYRING_ENTRY, key.decode())
                return
            except Exception as e:
                logger.warning(f"Failed to store encryption key in keyring, using key file: {e}")

        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        _write_private_file(self.key_path, key)

    def get_key(self, create: bool = True) -> Optional[bytes]:
        """
        Get the encryption key, creating it on first use.

        Args:
            create: Whether to generate and store a key when none exists

        Returns:
            Fernet key, or None when absent and ``create`` is False
        """
        if self._key:
            return self._key

        try:
            key = self._load_key()
            if key is None and create:
                key = self._generate_key()
                self._store_key(key)
                logger.info(f"Created pending-login encryption key (keyring: {self.keyring_available})")
        except OSError as e:
            raise StorageError(
                f"Encryption key unavailable: {e}",
                error_code=ErrorCode.STORAGE_KEY_UNAVAILABLE,
                cause=e
            )

        self._key = key
        return key


class PendingLoginStore(IPendingLoginStore):
    """
    Encrypted file store for the pending-login context.

    Every read goes to disk, so a store created by a restarted process sees
    what an earlier instance wrote.
    """

    def __init__(
        self,
        storage_dir: Optional[str] = None,
        service_name: str = "ciam-client",
        use_keyring: bool = True
    ):
        self.storage_dir = Path(storage_dir or default_storage_dir())
        self.storage_path = self.storage_dir / 'pending_login.enc'
        self._keys = EncryptionKeyProvider(self.storage_dir, service_name, use_keyring)

        logger.debug(f"Pending-login store at {self.storage_path} (keyring: {self._keys.keyring_available})")

    def get(self) -> Optional[PendingLoginContext]:
        """
        Read the stored context.

        Returns:
            The stored context, or None when nothing usable is stored
        """
        if not self.storage_path.exists():
            return None

        key = self._keys.get_key(create=False)
        if key is None:
            logger.warning("Pending-login data present without an encryption key, discarding")
            self.clear()
            return None

        try:
            decrypted = Fernet(key).decrypt(self.storage_path.read_bytes())
            return PendingLoginContext.from_dict(json.loads(decrypted.decode()))
        except InvalidToken:
            logger.warning("Pending-login data could not be decrypted, discarding")
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Pending-login data is malformed, discarding: {e}")
        except OSError as e:
            raise StorageError(
                f"Failed to read pending-login context: {e}",
                error_code=ErrorCode.STORAGE_READ_FAILED,
                cause=e
            )

        self.clear()
        return None

    def set(self, context: PendingLoginContext) -> None:
        """Replace the stored context."""
        payload = dict(context.to_dict(), stored_at=datetime.now().isoformat())
        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            encrypted = Fernet(self._keys.get_key()).encrypt(json.dumps(payload).encode())
            _write_private_file(self.storage_path, encrypted)
        except OSError as e:
            raise StorageError(f"Failed to store pending-login context: {e}", cause=e)

        logger.debug(f"Pending-login context stored for {context.username}")

    def clear(self) -> None:
        """Remove any stored context."""
        try:
            self.storage_path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to clear pending-login context: {e}", cause=e)


class RememberedUsernameStore(IUsernameStore):
    """
    Plain JSON store for the username the user asked to be remembered.
    """

    def __init__(self, storage_dir: Optional[str] = None):
        self.storage_dir = Path(storage_dir or default_storage_dir())
        self.storage_path = self.storage_dir / 'remembered_username.json'

    def _read(self) -> Optional[Dict[str, Any]]:
        if not self.storage_path.exists():
            return None
        try:
            with open(self.storage_path, 'r') as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to read remembered username: {e}")
            return None

    def get(self) -> Optional[str]:
        data = self._read()
        if not data:
            return None
        username = data.get('username')
        return username if isinstance(username, str) and username else None

    def has_saved(self) -> bool:
        return self.get() is not None

    def save(self, username: str) -> None:
        data = {'username': username, 'saved_at': datetime.now().isoformat()}
        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            _write_private_file(self.storage_path, json.dumps(data, indent=2).encode())
        except OSError as e:
            raise StorageError(f"Failed to save remembered username: {e}", cause=e)
        logger.info(f"Username remembered: {username}")

    def remove(self) -> None:
        try:
            self.storage_path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to remove remembered username: {e}", cause=e)
