"""
Backend-agnostic storage for backup artifacts.

StorageProvider wraps exactly one backend, chosen from the storage config
at construction, and adds what every backend shares: timestamp ordering of
listings, streaming readers/writers for the connection layer, chunked
ranged reads, and retention cleanup.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterator, List, Optional, Tuple

from dbkp.errors import ConfigurationError, EntryNotFoundError, StorageError, TimestampParseError
from dbkp.models import Entry, ListOptions, LocalStorageConfig, S3StorageConfig, StorageConfig
from dbkp.naming import extract_timestamp_from_filename, timestamp_sort_key
from .backends import LocalBackend, S3Backend


logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 512


def create_backend(config: StorageConfig):
    """
    Factory function to create the backend for a storage config.

    Raises:
        ConfigurationError: If the config type is not supported
    """
    if isinstance(config, LocalStorageConfig):
        return LocalBackend(config.location)
    elif isinstance(config, S3StorageConfig):
        return S3Backend(
            bucket=config.bucket,
            region=config.region,
            access_key=config.access_key,
            secret_key=config.secret_key,
            location=config.location,
            endpoint=config.endpoint
        )
    else:
        raise ConfigurationError(f"Invalid storage config: {config!r}")


class StorageProvider:
    """
    Storage for backup artifacts.

    Attributes:
        config: The storage configuration
        backend: LocalBackend or S3Backend, fixed for the provider's lifetime
    """

    def __init__(self, config: StorageConfig):
        self.config = config
        self.backend = create_backend(config)

    def __repr__(self):
        return f'<StorageProvider {self.config.name} backend={self.backend.__class__.__name__}>'

    def test(self) -> bool:
        """
        Check the backend is reachable by listing a single entry.

        Raises:
            StorageError: If the backend cannot be listed
        """
        self.backend.list(limit=1)
        return True

    def list(self) -> List[Entry]:
        return self.list_with_options(ListOptions())

    def list_with_options(self, options: ListOptions) -> List[Entry]:
        """
        List stored files, newest first.

        Ordering uses the timestamp embedded in each file name; names
        without one sort last.

        Args:
            options: latest_only and limit (default 1000)

        Returns:
            Entries sorted by embedded timestamp, descending. With
            latest_only, a single-element list.

        Raises:
            StorageError: If listing fails
            EntryNotFoundError: If latest_only and no dated file exists
        """
        try:
            entries = self.backend.list(limit=options.limit)
        except StorageError as e:
            raise StorageError(f"Failed to list backups: {e}", path=e.path)

        files = [entry for entry in entries if entry.metadata.is_file]
        for entry in files:
            entry.metadata.content_length = self._content_length(entry)

        files.sort(key=lambda entry: timestamp_sort_key(entry.metadata.name), reverse=True)

        if options.latest_only:
            for entry in files:
                try:
                    extract_timestamp_from_filename(entry.metadata.name)
                except TimestampParseError:
                    continue
                return [entry]
            raise EntryNotFoundError("No entry found")

        return files

    def _content_length(self, entry: Entry) -> int:
        # Local listings carry no reliable size; ask the filesystem
        if isinstance(self.backend, LocalBackend):
            try:
                return self.backend.stat(entry.path).content_length
            except StorageError:
                return 0
        return entry.metadata.content_length

    def create_writer(self, name: str):
        """
        Open a byte sink for a new object.

        The object is only complete once the writer is closed; use it as a
        context manager so failures discard the partial object.
        """
        logger.debug(f"Opening writer for {name}")
        return self.backend.open_writer(name)

    def create_reader(self, name: str):
        """Open a byte source (read(n), close()) over an object."""
        logger.debug(f"Opening reader for {name}")
        return self.backend.open_reader(name)

    def create_stream(self, name: str, start: int = 0, end: Optional[int] = None) -> Iterator[bytes]:
        """
        Read an object as a series of small ranged chunks.

        Chunk size is min(512, object size). start/end select a byte range
        so an interrupted consumer can resume where it stopped.

        Raises:
            StorageError: If the object does not exist
        """
        size = self.backend.stat(name).content_length
        end = size if end is None else min(end, size)
        chunk_size = min(STREAM_CHUNK_SIZE, size)

        if chunk_size == 0 or start >= end:
            return iter(())

        return self.backend.iter_range(name, start, end, chunk_size)

    def delete(self, path: str):
        """
        Delete one object.

        Raises:
            StorageError: If deletion fails; the message names the path
        """
        try:
            self.backend.delete(path)
        except StorageError as e:
            raise StorageError(f"Failed to delete backup {path}: {e}", path=path)

    def cleanup(self, retention_days: int, dry_run: bool = False) -> Tuple[int, int]:
        """
        Delete backups older than the retention window.

        Age is taken from the timestamp in each file name. Files without a
        parsable timestamp are skipped with a warning and never deleted.

        Args:
            retention_days: Keep backups newer than this many days
            dry_run: Count what would be deleted without deleting

        Returns:
            (deleted_count, deleted_bytes); identical for dry and real runs

        Raises:
            StorageError: If listing or a deletion fails
        """
        if retention_days < 0:
            raise ConfigurationError(f"retention_days must not be negative: {retention_days}")

        try:
            cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        except OverflowError:
            # window reaches past the earliest representable date; nothing is old enough
            cutoff = datetime.min.replace(tzinfo=timezone.utc)
        backups = self.list()

        deleted_count = 0
        deleted_size = 0

        for backup in backups:
            try:
                timestamp = extract_timestamp_from_filename(backup.metadata.name)
            except TimestampParseError:
                logger.warning(f"Failed to extract timestamp from {backup.metadata.name}")
                continue

            if timestamp >= cutoff:
                continue

            deleted_count += 1
            deleted_size += backup.metadata.content_length

            if dry_run:
                logger.info(f"Would delete {backup.path}")
            else:
                self.delete(backup.path)
                logger.info(f"Successfully deleted {backup.path}")

        logger.info(
            f"Cleanup of {self.config.name} complete "
            f"(retention: {retention_days} days, dry_run: {dry_run}). "
            f"Deleted: {deleted_count} files, {deleted_size} bytes"
        )

        return deleted_count, deleted_size
