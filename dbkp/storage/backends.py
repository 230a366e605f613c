"""
Storage backends for backup artifacts.

Supports:
- LocalBackend: Store in a local directory
- S3Backend: Store in AWS S3 or any S3-compatible service

Each backend exposes the same primitives (list, stat, open_reader,
open_writer, iter_range, delete) with paths relative to its root, so the
provider never needs to know where bytes actually live.
"""

import os
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from dbkp.config import Config
from dbkp.errors import StorageError
from dbkp.models import Entry, EntryMetadata


logger = logging.getLogger(__name__)


def _client_error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class LocalWriter:
    """
    File sink that only appears under its final name once closed.

    Data goes to ``{name}.part`` and is renamed on close(); abort() (or
    leaving a with-block with an exception) removes the partial file.
    """

    def __init__(self, path: Path):
        self.path = path
        self.temp_path = path.with_name(path.name + '.part')
        self.closed = False
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self.temp_path, 'wb')
        except OSError as e:
            raise StorageError(f"Failed to open {path} for writing: {e}", path=str(path))

    def write(self, data: bytes) -> int:
        try:
            return self._file.write(data)
        except OSError as e:
            raise StorageError(f"Failed to write {self.path}: {e}", path=str(self.path))

    def close(self):
        if self.closed:
            return
        self.closed = True
        try:
            self._file.close()
            os.replace(self.temp_path, self.path)
        except OSError as e:
            self._remove_partial()
            raise StorageError(f"Failed to finalize {self.path}: {e}", path=str(self.path))

    def abort(self):
        if self.closed:
            return
        self.closed = True
        self._file.close()
        self._remove_partial()

    def _remove_partial(self):
        try:
            self.temp_path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.abort()
        else:
            self.close()
        return False


class LocalBackend:
    """
    Backend storing objects under a local directory.
    """

    def __init__(self, root: str):
        """
        Args:
            root: Base directory for backups, created if missing
        """
        self.root = Path(root).expanduser()

        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            raise StorageError(f"Failed to create local storage directory: {e}", path=str(self.root))

    def full_path(self, path: str) -> Path:
        full_path = (self.root / path.lstrip('/')).resolve()
        root = self.root.resolve()
        if full_path != root and root not in full_path.parents:
            raise StorageError(f"Path escapes storage root: {path}", path=path)
        return full_path

    def list(self, limit: int) -> List[Entry]:
        """
        Recursively list files and directories, at most limit entries.

        Sizes are left at 0; the provider stats files itself.
        """
        entries = []

        try:
            for item in sorted(self.root.rglob('*')):
                if len(entries) >= limit:
                    break
                if item.name.endswith('.part'):
                    continue

                relative_path = item.relative_to(self.root).as_posix()
                try:
                    stat = item.stat()
                except OSError as e:
                    # dangling symlink, or removed since the directory walk
                    logger.warning(f"Skipping unreadable entry {relative_path}: {e}")
                    continue
                is_file = item.is_file()
                modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)

                entries.append(Entry(
                    path=relative_path if is_file else relative_path + '/',
                    metadata=EntryMetadata(
                        name=item.name,
                        is_file=is_file,
                        content_length=0,
                        last_modified=modified
                    )
                ))
        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}", path=str(self.root))

        return entries

    def stat(self, path: str) -> EntryMetadata:
        full_path = self.full_path(path)
        try:
            stat = full_path.stat()
        except FileNotFoundError:
            raise StorageError(f"Object not found: {path}", path=path)
        except OSError as e:
            raise StorageError(f"Failed to stat {path}: {e}", path=path)

        return EntryMetadata(
            name=full_path.name,
            is_file=full_path.is_file(),
            content_length=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
        )

    def open_reader(self, path: str):
        try:
            return open(self.full_path(path), 'rb')
        except FileNotFoundError:
            raise StorageError(f"Object not found: {path}", path=path)
        except OSError as e:
            raise StorageError(f"Failed to open {path}: {e}", path=path)

    def open_writer(self, path: str) -> LocalWriter:
        return LocalWriter(self.full_path(path))

    def iter_range(self, path: str, start: int, end: int, chunk_size: int) -> Iterator[bytes]:
        with self.open_reader(path) as f:
            f.seek(start)
            remaining = end - start
            while remaining > 0:
                try:
                    chunk = f.read(min(chunk_size, remaining))
                except OSError as e:
                    raise StorageError(f"Failed to read {path}: {e}", path=path)
                if not chunk:
                    break
                remaining -= len(chunk)
                yield chunk

    def delete(self, path: str):
        full_path = self.full_path(path)

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}", path=path)
        except Exception as e:
            raise StorageError(f"Failed to delete local file: {e}", path=path)


class S3Writer:
    """
    Streaming S3 upload.

    Small objects are sent with a single put_object on close(); once the
    buffer reaches part_size the writer switches to a multipart upload and
    ships one part at a time, so memory stays bounded by part_size. Any
    failure aborts the multipart upload.
    """

    def __init__(self, client, bucket: str, key: str, part_size: int = Config.S3_PART_SIZE):
        self.client = client
        self.bucket = bucket
        self.key = key
        self.part_size = part_size
        self.closed = False
        self._buffer = bytearray()
        self._upload_id = None
        self._parts = []

    def write(self, data: bytes) -> int:
        if self.closed:
            raise StorageError(f"Write to closed object {self.key}", path=self.key)

        self._buffer.extend(data)

        try:
            while len(self._buffer) >= self.part_size:
                part = bytes(self._buffer[:self.part_size])
                del self._buffer[:self.part_size]
                self._upload_part(part)
        except (ClientError, BotoCoreError) as e:
            self.abort()
            raise StorageError(f"S3 upload failed for {self.key}: {e}", path=self.key)

        return len(data)

    def _upload_part(self, data: bytes):
        if self._upload_id is None:
            response = self.client.create_multipart_upload(Bucket=self.bucket, Key=self.key)
            self._upload_id = response['UploadId']

        part_number = len(self._parts) + 1
        response = self.client.upload_part(
            Bucket=self.bucket,
            Key=self.key,
            PartNumber=part_number,
            UploadId=self._upload_id,
            Body=data
        )
        self._parts.append({
            'PartNumber': part_number,
            'ETag': response['ETag']
        })

    def close(self):
        if self.closed:
            return

        try:
            if self._upload_id is None:
                self.client.put_object(Bucket=self.bucket, Key=self.key, Body=bytes(self._buffer))
            else:
                if self._buffer:
                    self._upload_part(bytes(self._buffer))
                self.client.complete_multipart_upload(
                    Bucket=self.bucket,
                    Key=self.key,
                    UploadId=self._upload_id,
                    MultipartUpload={'Parts': self._parts}
                )
        except ClientError as e:
            self.abort()
            raise StorageError(f"S3 upload failed ({_client_error_code(e)}): {e}", path=self.key)
        except BotoCoreError as e:
            self.abort()
            raise StorageError(f"S3 upload failed: {e}", path=self.key)
        finally:
            self.closed = True
            self._buffer = bytearray()

    def abort(self):
        """Discard buffered data and any parts already uploaded."""
        self.closed = True
        self._buffer = bytearray()

        if self._upload_id is not None:
            try:
                self.client.abort_multipart_upload(
                    Bucket=self.bucket,
                    Key=self.key,
                    UploadId=self._upload_id
                )
            except (ClientError, BotoCoreError):
                # best effort
                pass
            self._upload_id = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.abort()
        else:
            self.close()
        return False


class S3Backend:
    """
    Backend for AWS S3 and S3-compatible services (MinIO, R2, ...).

    Objects live under ``{location}/`` inside the bucket.
    """

    def __init__(self, bucket: str, region: str, access_key: str, secret_key: str,
                 location: str = '', endpoint: Optional[str] = None,
                 part_size: int = Config.S3_PART_SIZE):
        """
        Initialize S3 backend.

        Args:
            bucket: S3 bucket name
            region: AWS region
            access_key: AWS access key ID
            secret_key: AWS secret access key
            location: Key prefix acting as the storage root
            endpoint: Custom endpoint URL for S3-compatible services
            part_size: Multipart upload part size in bytes
        """
        self.bucket = bucket
        self.region = region
        self.prefix = location.strip('/')
        self.part_size = part_size

        try:
            self.client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint or None
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def key(self, path: str) -> str:
        path = path.lstrip('/')
        return f"{self.prefix}/{path}" if self.prefix else path

    def _relative(self, key: str) -> str:
        if self.prefix and key.startswith(self.prefix + '/'):
            return key[len(self.prefix) + 1:]
        return key

    def list(self, limit: int) -> List[Entry]:
        """
        List objects under the prefix, at most limit entries.

        Listing sizes are trusted as content lengths.
        """
        entries = []
        prefix = self.prefix + '/' if self.prefix else ''

        try:
            paginator = self.client.get_paginator('list_objects_v2')
            pages = paginator.paginate(
                Bucket=self.bucket,
                Prefix=prefix,
                PaginationConfig={'MaxItems': limit}
            )

            for page in pages:
                for obj in page.get('Contents', []):
                    path = self._relative(obj['Key'])
                    if not path:
                        continue
                    is_file = not path.endswith('/')
                    entries.append(Entry(
                        path=path,
                        metadata=EntryMetadata(
                            name=os.path.basename(path.rstrip('/')),
                            is_file=is_file,
                            content_length=obj['Size'],
                            last_modified=obj['LastModified']
                        )
                    ))

        except ClientError as e:
            raise StorageError(f"S3 list failed ({_client_error_code(e)}): {e}", path=prefix)
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}", path=prefix)

        return entries[:limit]

    def stat(self, path: str) -> EntryMetadata:
        key = self.key(path)
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            error_code = _client_error_code(e)
            if error_code in ('404', 'NoSuchKey', 'NotFound'):
                raise StorageError(f"Object not found: {path}", path=path)
            raise StorageError(f"S3 stat failed for {path} ({error_code}): {e}", path=path)
        except BotoCoreError as e:
            raise StorageError(f"S3 stat failed for {path}: {e}", path=path)

        return EntryMetadata(
            name=os.path.basename(path),
            is_file=True,
            content_length=response['ContentLength'],
            last_modified=response.get('LastModified')
        )

    def _get_object(self, path: str, **kwargs):
        try:
            return self.client.get_object(Bucket=self.bucket, Key=self.key(path), **kwargs)
        except ClientError as e:
            error_code = _client_error_code(e)
            if error_code in ('404', 'NoSuchKey', 'NotFound'):
                raise StorageError(f"Object not found: {path}", path=path)
            raise StorageError(f"S3 read failed for {path} ({error_code}): {e}", path=path)
        except BotoCoreError as e:
            raise StorageError(f"S3 read failed for {path}: {e}", path=path)

    def open_reader(self, path: str):
        """Return the streaming body of the object (read(n), close())."""
        return self._get_object(path)['Body']

    def open_writer(self, path: str) -> S3Writer:
        return S3Writer(self.client, self.bucket, self.key(path), part_size=self.part_size)

    def iter_range(self, path: str, start: int, end: int, chunk_size: int) -> Iterator[bytes]:
        if end <= start:
            return
        body = self._get_object(path, Range=f'bytes={start}-{end - 1}')['Body']
        try:
            for chunk in body.iter_chunks(chunk_size):
                yield chunk
        except BotoCoreError as e:
            raise StorageError(f"S3 read failed for {path}: {e}", path=path)
        finally:
            body.close()

    def delete(self, path: str):
        try:
            self.client.delete_object(Bucket=self.bucket, Key=self.key(path))
        except ClientError as e:
            raise StorageError(f"S3 delete failed ({_client_error_code(e)}): {e}", path=path)
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}", path=path)
