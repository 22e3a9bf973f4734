"""Encrypted on-disk key-value storage.

Every key maps to one file named by the SHA-256 digest of the key. File bodies are encrypted
with AES-256-GCM and framed as ``nonce (12 bytes) + tag (16 bytes) + ciphertext``. The key
string is bound to the ciphertext as associated data, so a blob copied under another key fails
to decrypt.

The data key is generated on first use and stored base64 encoded in a key file only the
current user can read. Blocking file access runs in a worker thread, making each storage
call a suspension point for the event loop.
"""
import asyncio
import base64
import hashlib
import json
import logging
import os
import pathlib
import uuid
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..status import status

KEY_SIZE: int = 32
NONCE_SIZE: int = 12
TAG_SIZE: int = 16
BLOB_SUFFIX: str = '.bin'


def _encrypt(data: bytes, key: bytes, associated_data: bytes) -> bytes:
    nonce = os.urandom(NONCE_SIZE)
    encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).encryptor()
    encryptor.authenticate_additional_data(associated_data)
    ciphertext = encryptor.update(data) + encryptor.finalize()
    return nonce + encryptor.tag + ciphertext


def _decrypt(blob: bytes, key: bytes, associated_data: bytes) -> bytes:
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise ValueError('Encrypted blob is too short.')

    nonce = blob[:NONCE_SIZE]
    tag = blob[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
    ciphertext = blob[NONCE_SIZE + TAG_SIZE:]

    decryptor = Cipher(algorithms.AES(key), modes.GCM(nonce, tag)).decryptor()
    decryptor.authenticate_additional_data(associated_data)
    return decryptor.update(ciphertext) + decryptor.finalize()


class EncryptedStorage:
    """Durable, encrypted JSON storage addressed by arbitrary string keys.

    Args:
        root: Directory holding the encrypted blobs.
        key_path: Path of the data key file. Defaults to ``<root>/storage.key``.
    """

    def __init__(self, root, key_path=None) -> None:
        self.root: pathlib.Path = pathlib.Path(root)
        self.key_path: pathlib.Path = pathlib.Path(key_path) if key_path else self.root / 'storage.key'
        self._key: Optional[bytes] = None

    def _load_key(self) -> bytes:
        if self._key is not None:
            return self._key

        if self.key_path.exists():
            try:
                key = base64.b64decode(self.key_path.read_bytes().strip(), validate=True)
            except (OSError, ValueError) as ex:
                raise status.StorageUnavailableException(f'Cannot read key file {self.key_path}: {ex}') from ex
            if len(key) != KEY_SIZE:
                raise status.StorageUnavailableException(f'Key file {self.key_path} does not hold a 256-bit key.')
            self._key = key
            return key

        logging.debug(f'Generating a new storage key at {self.key_path}')
        key = os.urandom(KEY_SIZE)
        try:
            self.key_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, 'wb') as f:
                f.write(base64.b64encode(key))
        except FileExistsError:
            # Created by another storage instance in the meantime
            return self._load_key()
        except OSError as ex:
            raise status.StorageUnavailableException(f'Cannot write key file {self.key_path}: {ex}') from ex

        self._key = key
        return key

    def path_for(self, key: str) -> pathlib.Path:
        """Return the blob path of a storage key."""
        digest = hashlib.sha256(key.encode('utf-8')).hexdigest()
        return self.root / f'{digest}{BLOB_SUFFIX}'

    def _read(self, key: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(key)
        try:
            blob = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as ex:
            raise status.StorageUnavailableException(f'Cannot read "{key}": {ex}') from ex

        try:
            data = _decrypt(blob, self._load_key(), key.encode('utf-8'))
            value = json.loads(data.decode('utf-8'))
        except (InvalidTag, ValueError) as ex:
            raise status.CacheCorruptException(f'Cannot decrypt "{key}": {ex}') from ex

        if not isinstance(value, dict):
            raise status.CacheCorruptException(f'"{key}" does not hold a JSON object.')
        return value

    def _write(self, key: str, value: Dict[str, Any]) -> None:
        data = json.dumps(value, ensure_ascii=False, separators=(',', ':')).encode('utf-8')
        blob = _encrypt(data, self._load_key(), key.encode('utf-8'))

        path = self.path_for(key)
        tmp_path = path.with_name(f'{path.name}.{uuid.uuid4().hex}.tmp')
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(blob)
            os.replace(tmp_path, path)
        except OSError as ex:
            tmp_path.unlink(missing_ok=True)
            raise status.StorageUnavailableException(f'Cannot write "{key}": {ex}') from ex

    def _delete(self, key: str) -> None:
        try:
            self.path_for(key).unlink(missing_ok=True)
        except OSError as ex:
            raise status.StorageUnavailableException(f'Cannot delete "{key}": {ex}') from ex

    def _clear(self) -> int:
        if not self.root.exists():
            return 0
        count = 0
        try:
            for path in self.root.glob(f'*{BLOB_SUFFIX}'):
                path.unlink(missing_ok=True)
                count += 1
        except OSError as ex:
            raise status.StorageUnavailableException(f'Cannot clear {self.root}: {ex}') from ex
        return count

    async def read_json(self, key: str) -> Optional[Dict[str, Any]]:
        """Read and decrypt the JSON object stored under ``key``.

        Returns:
            The stored dict, or None if nothing is stored under the key.

        Raises:
            status.StorageUnavailableException: If the file cannot be read.
            status.CacheCorruptException: If the blob fails authentication or is not JSON.
        """
        return await asyncio.to_thread(self._read, key)

    async def write_json(self, key: str, value: Dict[str, Any]) -> None:
        """Encrypt and atomically store ``value`` under ``key``."""
        await asyncio.to_thread(self._write, key, value)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self.path_for(key).exists)

    async def clear(self) -> int:
        """Delete every stored blob. Returns the number of blobs removed."""
        return await asyncio.to_thread(self._clear)
