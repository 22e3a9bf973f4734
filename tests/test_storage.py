"""
Tests for MoneyTracker.core.storage
(covers encryption at rest, key handling, atomic writes and failure mapping).

Run:
    python -m unittest tests.test_storage
"""
import base64
import os
import stat
import sys
import unittest

from MoneyTracker.core.storage import EncryptedStorage, KEY_SIZE
from MoneyTracker.status import status
from tests.base import BaseTestCase


class EncryptedStorageTests(BaseTestCase):

    async def test_round_trip(self):
        await self.storage.write_json('user/a/transactions/meta', {'a': 1, 'b': ['x', None], 'c': 'ü'})
        self.assertEqual(
            await self.storage.read_json('user/a/transactions/meta'),
            {'a': 1, 'b': ['x', None], 'c': 'ü'},
        )

    async def test_missing_key_reads_none(self):
        self.assertIsNone(await self.storage.read_json('nothing/here'))
        self.assertFalse(await self.storage.exists('nothing/here'))

    async def test_exists_and_delete(self):
        await self.storage.write_json('k', {'v': 1})
        self.assertTrue(await self.storage.exists('k'))
        await self.storage.delete('k')
        self.assertFalse(await self.storage.exists('k'))
        # Deleting twice is not an error
        await self.storage.delete('k')

    async def test_file_is_encrypted(self):
        await self.storage.write_json('secret', {'description': 'plain text marker'})
        blob = self.storage.path_for('secret').read_bytes()
        self.assertNotIn(b'plain text marker', blob)
        self.assertNotIn(b'secret', self.storage.path_for('secret').name.encode())

    async def test_arbitrary_keys(self):
        keys = ['a/b/c', 'ü/€', 'with spaces', '../../etc/passwd', '']
        for i, key in enumerate(keys):
            await self.storage.write_json(key, {'i': i})
        for i, key in enumerate(keys):
            self.assertEqual(await self.storage.read_json(key), {'i': i})
        for path in self.storage.root.iterdir():
            self.assertEqual(path.parent, self.storage.root)

    async def test_blob_bound_to_its_key(self):
        await self.storage.write_json('one', {'v': 1})
        await self.storage.write_json('two', {'v': 2})
        self.storage.path_for('two').write_bytes(self.storage.path_for('one').read_bytes())
        with self.assertRaises(status.CacheCorruptException):
            await self.storage.read_json('two')

    async def test_tampered_blob_is_corrupt(self):
        await self.storage.write_json('k', {'v': 1})
        path = self.storage.path_for('k')
        data = bytearray(path.read_bytes())
        data[-1] ^= 0xFF
        path.write_bytes(bytes(data))
        with self.assertRaises(status.CacheCorruptException):
            await self.storage.read_json('k')

    async def test_truncated_blob_is_corrupt(self):
        await self.storage.write_json('k', {'v': 1})
        self.storage.path_for('k').write_bytes(b'short')
        with self.assertRaises(status.CacheCorruptException):
            await self.storage.read_json('k')

    async def test_key_persists_across_instances(self):
        await self.storage.write_json('k', {'v': 1})
        other = EncryptedStorage(self.storage.root, key_path=self.storage.key_path)
        self.assertEqual(await other.read_json('k'), {'v': 1})

    async def test_other_key_cannot_decrypt(self):
        await self.storage.write_json('k', {'v': 1})
        other = EncryptedStorage(self.storage.root, key_path=self.storage.root / 'other.key')
        with self.assertRaises(status.CacheCorruptException):
            await other.read_json('k')

    async def test_key_file(self):
        await self.storage.write_json('k', {'v': 1})
        key = base64.b64decode(self.storage.key_path.read_bytes())
        self.assertEqual(len(key), KEY_SIZE)

    @unittest.skipIf(sys.platform == 'win32', 'POSIX permissions only')
    async def test_key_file_permissions(self):
        await self.storage.write_json('k', {'v': 1})
        mode = stat.S_IMODE(os.stat(self.storage.key_path).st_mode)
        self.assertEqual(mode, 0o600)

    async def test_invalid_key_file(self):
        self.storage.key_path.write_bytes(base64.b64encode(b'too short'))
        with self.assertRaises(status.StorageUnavailableException):
            await self.storage.write_json('k', {'v': 1})

    async def test_overwrite_leaves_no_temp_files(self):
        for i in range(5):
            await self.storage.write_json('k', {'v': i})
        self.assertEqual(await self.storage.read_json('k'), {'v': 4})
        self.assertEqual([p for p in self.storage.root.iterdir() if p.suffix == '.tmp'], [])

    async def test_clear(self):
        for i in range(3):
            await self.storage.write_json(f'k{i}', {'v': i})
        self.assertEqual(await self.storage.clear(), 3)
        for i in range(3):
            self.assertIsNone(await self.storage.read_json(f'k{i}'))
        # The key file lives next to the settings and survives
        self.assertTrue(self.storage.key_path.exists())

    async def test_non_object_json_is_corrupt(self):
        await self.storage.write_json('k', {'v': 1})
        # Rewrite a valid blob holding a JSON list
        from MoneyTracker.core import storage as storage_module
        blob = storage_module._encrypt(b'[1, 2]', self.storage._load_key(), b'k')
        self.storage.path_for('k').write_bytes(blob)
        with self.assertRaises(status.CacheCorruptException):
            await self.storage.read_json('k')


if __name__ == '__main__':
    unittest.main()
