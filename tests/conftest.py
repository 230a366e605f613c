"""
Shared pytest fixtures for dbkp tests.

This module provides fixtures for:
- Storage configs and providers (local and moto-backed S3)
- Fake client utilities (pg_dump, psql, mysqldump, mysql) as shell scripts
- Database connections with the SQLAlchemy engine mocked out
- Sample backup files with embedded timestamps
"""

import os
import stat
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from dbkp.config import Config
from dbkp.databases.mysql import MySqlConnection
from dbkp.databases.postgres import PostgreSqlConnection
from dbkp.models import (
    ConnectionConfig,
    DatabaseMetadata,
    LocalStorageConfig,
    S3StorageConfig,
    Version
)
from dbkp.storage import StorageProvider


FAKE_DUMP = """#!/bin/sh
printf '%s\\n' "$@" > "$FAKE_ARGS_FILE"
env | grep -E '^(PGPASSWORD|MYSQL_PWD)=' > "$FAKE_ENV_FILE"
if [ -n "$FAKE_DUMP_FAIL" ]; then
    echo "dump: error: connection to server failed" >&2
    exit 1
fi
cat "$FAKE_DUMP_SOURCE"
"""

FAKE_CLIENT = """#!/bin/sh
for arg in "$@"; do
    if [ "$arg" = "-c" ] || [ "$arg" = "-e" ]; then
        printf '%s\\n' "$*" >> "$FAKE_ADMIN_LOG"
        if [ -n "$FAKE_ADMIN_FAIL" ] && printf '%s' "$*" | grep -q "$FAKE_ADMIN_FAIL"; then
            echo "client: admin command failed" >&2
            exit 2
        fi
        exit 0
    fi
done
printf '%s\\n' "$@" > "$FAKE_ARGS_FILE"
env | grep -E '^(PGPASSWORD|MYSQL_PWD)=' > "$FAKE_ENV_FILE"
if [ -n "$FAKE_RESTORE_EXIT_EARLY" ]; then
    echo "client: fatal: could not connect" >&2
    exit 4
fi
cat > "$FAKE_RESTORE_TARGET"
if [ -n "$FAKE_RESTORE_FAIL" ]; then
    echo "SET"
    echo "ERROR: syntax error at or near \\"garbage\\"" >&2
    exit 3
fi
"""


def write_script(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def make_executable():
    """Return a helper writing an executable script at a given path."""
    return write_script


@pytest.fixture
def fake_utilities(tmp_path, monkeypatch):
    """
    Install fake client utilities and point Config.UTILITIES_DIR at them.

    Layout: {root}/{engine}/{major}/bin/{name}

    Returns a dict of paths the scripts read and write, wired through
    environment variables.
    """
    root = tmp_path / 'utilities'
    write_script(root / 'postgresql' / '15' / 'bin' / 'pg_dump', FAKE_DUMP)
    write_script(root / 'postgresql' / '15' / 'bin' / 'psql', FAKE_CLIENT)
    write_script(root / 'mysql' / '8' / 'bin' / 'mysqldump', FAKE_DUMP)
    write_script(root / 'mysql' / '8' / 'bin' / 'mysql', FAKE_CLIENT)
    write_script(root / 'mariadb' / '10' / 'bin' / 'mariadb-dump', FAKE_DUMP)
    write_script(root / 'mariadb' / '10' / 'bin' / 'mariadb', FAKE_CLIENT)

    files = {
        'root': root,
        'args': tmp_path / 'args.txt',
        'env': tmp_path / 'env.txt',
        'admin_log': tmp_path / 'admin.log',
        'dump_source': tmp_path / 'dump_source.sql',
        'restore_target': tmp_path / 'restore_target.sql',
    }

    monkeypatch.setattr(Config, 'UTILITIES_DIR', str(root))
    monkeypatch.setenv('FAKE_ARGS_FILE', str(files['args']))
    monkeypatch.setenv('FAKE_ENV_FILE', str(files['env']))
    monkeypatch.setenv('FAKE_ADMIN_LOG', str(files['admin_log']))
    monkeypatch.setenv('FAKE_DUMP_SOURCE', str(files['dump_source']))
    monkeypatch.setenv('FAKE_RESTORE_TARGET', str(files['restore_target']))
    for name in ('FAKE_DUMP_FAIL', 'FAKE_ADMIN_FAIL', 'FAKE_RESTORE_FAIL', 'FAKE_RESTORE_EXIT_EARLY'):
        monkeypatch.delenv(name, raising=False)

    return files


@pytest.fixture
def mock_engine():
    """Patch create_engine so connections never reach a real server."""
    with patch('dbkp.databases.base.create_engine') as mock_create_engine:
        engine = MagicMock()
        mock_create_engine.return_value = engine
        yield engine


@pytest.fixture
def postgres_config():
    return ConnectionConfig(
        connection_type='postgresql',
        host='db.example.com',
        port=5432,
        database='app',
        username='postgres',
        password='s3cret'
    )


@pytest.fixture
def pg_connection(postgres_config, mock_engine, fake_utilities):
    """PostgreSQL connection reporting server version 15.4."""
    connection = PostgreSqlConnection(postgres_config)
    connection.get_metadata = lambda: DatabaseMetadata(Version('postgresql', 15, 4))
    yield connection
    connection.close()


@pytest.fixture
def mysql_connection(mock_engine, fake_utilities):
    """MySQL connection reporting server version 8.0.35."""
    config = ConnectionConfig(
        connection_type='mysql',
        host='mysql.example.com',
        port=3306,
        database='shop',
        username='root',
        password='rootpw'
    )
    connection = MySqlConnection(config)
    connection.get_metadata = lambda: DatabaseMetadata(Version('mysql', 8, 0, 35))
    yield connection
    connection.close()


@pytest.fixture
def local_storage(tmp_path):
    """Local StorageProvider rooted in a temp directory."""
    config = LocalStorageConfig(id='local-1', name='local', location=str(tmp_path / 'backups'))
    return StorageProvider(config)


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def s3_storage(mock_s3):
    """S3 StorageProvider storing under the 'backups/' prefix of test-bucket."""
    config = S3StorageConfig(
        id='s3-1',
        name='s3',
        bucket='test-bucket',
        region='us-east-1',
        access_key='test_access_key',
        secret_key='test_secret_key',
        location='backups'
    )
    return StorageProvider(config)


@pytest.fixture
def sample_backups(local_storage):
    """
    Write the reference backup set into local storage.

    Creates:
    - a_20240101000000.sql (100 bytes)
    - a_20240201000000.sql (200 bytes)
    - b_20240301000000.sql (300 bytes)
    """
    root = local_storage.backend.root
    (root / 'a_20240101000000.sql').write_bytes(b'a' * 100)
    (root / 'a_20240201000000.sql').write_bytes(b'a' * 200)
    (root / 'b_20240301000000.sql').write_bytes(b'b' * 300)
    return local_storage
