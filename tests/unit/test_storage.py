"""
Unit tests for storage backends (dbkp/storage/backends.py).

Tests LocalBackend and S3Backend primitives; S3 runs against moto.
"""

import boto3
import pytest
from moto import mock_aws

from dbkp.errors import StorageError
from dbkp.storage.backends import LocalBackend, LocalWriter, S3Backend


MIB = 1024 * 1024


class TestLocalBackend:
    """Test LocalBackend filesystem operations."""

    def test_creates_root(self, tmp_path):
        root = tmp_path / 'nested' / 'backups'

        LocalBackend(str(root))

        assert root.is_dir()

    def test_writer_publishes_on_close(self, tmp_path):
        backend = LocalBackend(str(tmp_path))

        writer = backend.open_writer('app_20240101000000.sql')
        writer.write(b'CREATE TABLE t ();\n')

        # Not visible under the final name until closed
        assert not (tmp_path / 'app_20240101000000.sql').exists()
        assert (tmp_path / 'app_20240101000000.sql.part').exists()

        writer.close()

        assert (tmp_path / 'app_20240101000000.sql').read_bytes() == b'CREATE TABLE t ();\n'
        assert not (tmp_path / 'app_20240101000000.sql.part').exists()

    def test_writer_creates_subdirectories(self, tmp_path):
        backend = LocalBackend(str(tmp_path))

        with backend.open_writer('daily/app_20240101000000.sql') as writer:
            writer.write(b'data')

        assert (tmp_path / 'daily' / 'app_20240101000000.sql').read_bytes() == b'data'

    def test_writer_aborts_on_exception(self, tmp_path):
        backend = LocalBackend(str(tmp_path))

        with pytest.raises(RuntimeError):
            with backend.open_writer('app_20240101000000.sql') as writer:
                writer.write(b'partial')
                raise RuntimeError("dump failed")

        assert list(tmp_path.iterdir()) == []

    def test_path_cannot_escape_root(self, tmp_path):
        backend = LocalBackend(str(tmp_path / 'backups'))

        with pytest.raises(StorageError, match="escapes"):
            backend.open_writer('../outside.sql')

    def test_list_marks_directories_and_skips_partials(self, tmp_path):
        backend = LocalBackend(str(tmp_path))
        (tmp_path / 'daily').mkdir()
        (tmp_path / 'daily' / 'app_20240101000000.sql').write_bytes(b'x')
        (tmp_path / 'app_20240102000000.sql.part').write_bytes(b'y')

        entries = {entry.path: entry for entry in backend.list(limit=1000)}

        assert set(entries) == {'daily/', 'daily/app_20240101000000.sql'}
        assert not entries['daily/'].metadata.is_file
        assert entries['daily/app_20240101000000.sql'].metadata.is_file
        assert entries['daily/app_20240101000000.sql'].metadata.name == 'app_20240101000000.sql'

    def test_list_skips_dangling_symlink(self, tmp_path, caplog):
        backend = LocalBackend(str(tmp_path))
        (tmp_path / 'app_20240101000000.sql').write_bytes(b'x')
        (tmp_path / 'stale_20200101000000.sql').symlink_to(tmp_path / 'gone.sql')

        entries = backend.list(limit=1000)

        assert [entry.path for entry in entries] == ['app_20240101000000.sql']
        assert 'stale_20200101000000.sql' in caplog.text

    def test_list_respects_limit(self, tmp_path):
        backend = LocalBackend(str(tmp_path))
        for day in range(1, 6):
            (tmp_path / f'app_2024010{day}000000.sql').write_bytes(b'x')

        assert len(backend.list(limit=3)) == 3

    def test_stat(self, tmp_path):
        backend = LocalBackend(str(tmp_path))
        (tmp_path / 'app_20240101000000.sql').write_bytes(b'x' * 42)

        metadata = backend.stat('app_20240101000000.sql')

        assert metadata.content_length == 42
        assert metadata.is_file
        assert metadata.last_modified.tzinfo is not None

    def test_stat_missing(self, tmp_path):
        backend = LocalBackend(str(tmp_path))

        with pytest.raises(StorageError, match="not found"):
            backend.stat('missing.sql')

    def test_iter_range(self, tmp_path):
        backend = LocalBackend(str(tmp_path))
        (tmp_path / 'data.bin').write_bytes(bytes(range(100)))

        chunks = list(backend.iter_range('data.bin', 10, 45, 16))

        assert [len(c) for c in chunks] == [16, 16, 3]
        assert b''.join(chunks) == bytes(range(10, 45))

    def test_delete(self, tmp_path):
        backend = LocalBackend(str(tmp_path))
        (tmp_path / 'app_20240101000000.sql').write_bytes(b'x')

        backend.delete('app_20240101000000.sql')

        assert not (tmp_path / 'app_20240101000000.sql').exists()

    def test_delete_missing_is_noop(self, tmp_path):
        backend = LocalBackend(str(tmp_path))

        backend.delete('missing.sql')


class TestLocalWriter:
    """Test LocalWriter finalisation."""

    def test_close_is_idempotent(self, tmp_path):
        writer = LocalWriter(tmp_path / 'a.sql')
        writer.write(b'data')
        writer.close()
        writer.close()

        assert (tmp_path / 'a.sql').read_bytes() == b'data'

    def test_abort_after_close_keeps_object(self, tmp_path):
        writer = LocalWriter(tmp_path / 'a.sql')
        writer.close()
        writer.abort()

        assert (tmp_path / 'a.sql').exists()


class TestS3Backend:
    """Test S3Backend against a mocked bucket."""

    @pytest.fixture
    def backend(self, mock_s3):
        return S3Backend(
            bucket='test-bucket',
            region='us-east-1',
            access_key='test_access_key',
            secret_key='test_secret_key',
            location='backups'
        )

    def test_key_prefixing(self, backend):
        assert backend.key('app.sql') == 'backups/app.sql'
        assert backend.key('/app.sql') == 'backups/app.sql'

    def test_key_without_location(self, mock_s3):
        backend = S3Backend('test-bucket', 'us-east-1', 'key', 'secret')

        assert backend.key('app.sql') == 'app.sql'

    def test_small_object_uses_single_put(self, backend, mock_s3):
        with backend.open_writer('app_20240101000000.sql') as writer:
            writer.write(b'test data' * 100)

        obj = mock_s3.Object('test-bucket', 'backups/app_20240101000000.sql')
        assert obj.content_length == 900

    def test_large_object_uses_multipart(self, backend, mock_s3):
        payload = bytes(range(256)) * (11 * MIB // 256)

        writer = backend.open_writer('app_20240101000000.sql')
        for offset in range(0, len(payload), MIB):
            writer.write(payload[offset:offset + MIB])

        assert writer._upload_id is not None
        writer.close()

        body = mock_s3.Object('test-bucket', 'backups/app_20240101000000.sql').get()['Body'].read()
        assert body == payload

    def test_failed_multipart_is_aborted(self, backend, mock_s3):
        with pytest.raises(RuntimeError):
            with backend.open_writer('app_20240101000000.sql') as writer:
                writer.write(b'x' * (11 * MIB))
                raise RuntimeError("dump failed")

        client = boto3.client('s3', region_name='us-east-1')
        uploads = client.list_multipart_uploads(Bucket='test-bucket')
        assert not uploads.get('Uploads')
        assert 'Contents' not in client.list_objects_v2(Bucket='test-bucket')

    def test_write_after_close(self, backend):
        writer = backend.open_writer('a.sql')
        writer.close()

        with pytest.raises(StorageError):
            writer.write(b'late')

    def test_list_trusts_listing_size(self, backend, mock_s3):
        mock_s3.Object('test-bucket', 'backups/a_20240101000000.sql').put(Body=b'x' * 10)
        mock_s3.Object('test-bucket', 'backups/daily/b_20240102000000.sql').put(Body=b'y' * 20)
        mock_s3.Object('test-bucket', 'other/c_20240103000000.sql').put(Body=b'z')

        entries = {entry.path: entry for entry in backend.list(limit=1000)}

        assert set(entries) == {'a_20240101000000.sql', 'daily/b_20240102000000.sql'}
        assert entries['a_20240101000000.sql'].metadata.content_length == 10
        assert entries['daily/b_20240102000000.sql'].metadata.name == 'b_20240102000000.sql'

    def test_list_respects_limit(self, backend, mock_s3):
        for day in range(1, 6):
            mock_s3.Object('test-bucket', f'backups/a_2024010{day}000000.sql').put(Body=b'x')

        assert len(backend.list(limit=2)) == 2

    def test_list_missing_bucket(self, mock_s3):
        backend = S3Backend('no-such-bucket', 'us-east-1', 'key', 'secret')

        with pytest.raises(StorageError, match="NoSuchBucket"):
            backend.list(limit=1)

    def test_stat(self, backend, mock_s3):
        mock_s3.Object('test-bucket', 'backups/a.sql').put(Body=b'x' * 33)

        metadata = backend.stat('a.sql')

        assert metadata.content_length == 33
        assert metadata.name == 'a.sql'

    def test_stat_missing(self, backend):
        with pytest.raises(StorageError, match="not found"):
            backend.stat('missing.sql')

    def test_open_reader(self, backend, mock_s3):
        mock_s3.Object('test-bucket', 'backups/a.sql').put(Body=b'SELECT 1;\n')

        reader = backend.open_reader('a.sql')
        try:
            assert reader.read(6) == b'SELECT'
            assert reader.read(100) == b' 1;\n'
            assert reader.read(100) == b''
        finally:
            reader.close()

    def test_open_reader_missing(self, backend):
        with pytest.raises(StorageError, match="not found"):
            backend.open_reader('missing.sql')

    def test_iter_range(self, backend, mock_s3):
        mock_s3.Object('test-bucket', 'backups/data.bin').put(Body=bytes(range(100)))

        data = b''.join(backend.iter_range('data.bin', 10, 45, 16))

        assert data == bytes(range(10, 45))

    def test_delete(self, backend, mock_s3):
        mock_s3.Object('test-bucket', 'backups/a.sql').put(Body=b'x')

        backend.delete('a.sql')

        client = boto3.client('s3', region_name='us-east-1')
        assert 'Contents' not in client.list_objects_v2(Bucket='test-bucket')


@mock_aws
def test_custom_endpoint_is_passed_to_client():
    """S3-compatible services are reached through endpoint_url."""
    backend = S3Backend(
        bucket='test-bucket',
        region='us-east-1',
        access_key='key',
        secret_key='secret',
        endpoint='http://minio.local:9000'
    )

    assert backend.client.meta.endpoint_url == 'http://minio.local:9000'
