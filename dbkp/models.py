"""
Configuration structs and value objects shared across dbkp.

These are produced by the configuration layer (CLI, files, environment) and
trusted by the rest of the package once constructed. Only structural checks
happen here; connectivity problems surface when the objects are used.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Union

from dbkp.errors import ConfigurationError


CONNECTION_TYPES = ('postgresql', 'mysql', 'mariadb')


@dataclass
class TunnelConfig:
    """SSH bastion used to reach a database that is not directly routable."""
    host: str
    username: str
    port: int = 22
    password: Optional[str] = None
    key_path: Optional[str] = None
    passphrase: Optional[str] = None

    def __post_init__(self):
        if not self.host:
            raise ConfigurationError("SSH tunnel host is required")
        if not self.username:
            raise ConfigurationError("SSH tunnel username is required")
        if not self.password and not self.key_path:
            raise ConfigurationError("Either password or key_path must be provided for the SSH tunnel")

    def __repr__(self):
        auth = 'key' if self.key_path else 'password'
        return f'<TunnelConfig {self.username}@{self.host}:{self.port} auth={auth}>'


@dataclass
class ConnectionConfig:
    """Database endpoint and credentials."""
    connection_type: str
    host: str
    port: int
    database: str
    username: str
    password: Optional[str] = None
    ssh_tunnel: Optional[TunnelConfig] = None
    id: Optional[str] = None
    name: Optional[str] = None

    def __post_init__(self):
        self.connection_type = (self.connection_type or '').lower()
        if self.connection_type not in CONNECTION_TYPES:
            raise ConfigurationError(
                f"Invalid connection type: {self.connection_type}. "
                f"Valid options: {list(CONNECTION_TYPES)}"
            )
        if not self.database:
            raise ConfigurationError("Database name is required")
        if not self.username:
            raise ConfigurationError("Database username is required")
        if not self.host:
            raise ConfigurationError("Database host is required")

    def with_endpoint(self, host: str, port: int) -> 'ConnectionConfig':
        """Return a copy pointing at another host/port, tunnel config kept."""
        return replace(self, host=host, port=port)

    def __repr__(self):
        return (
            f'<ConnectionConfig {self.connection_type} '
            f'{self.username}@{self.host}:{self.port}/{self.database}>'
        )


@dataclass(frozen=True)
class RestoreOptions:
    drop_database_first: bool = False


@dataclass(frozen=True)
class Version:
    """Server version tagged with the engine it belongs to."""
    engine: str
    major: int
    minor: int = 0
    patch: Optional[int] = None

    def __str__(self):
        if self.patch is None:
            return f'{self.major}.{self.minor}'
        return f'{self.major}.{self.minor}.{self.patch}'


@dataclass(frozen=True)
class DatabaseMetadata:
    version: Version


@dataclass
class LocalStorageConfig:
    id: str
    name: str
    location: str


@dataclass
class S3StorageConfig:
    id: str
    name: str
    bucket: str
    region: str
    access_key: str
    secret_key: str
    location: str = ''
    endpoint: Optional[str] = None

    def __repr__(self):
        return f'<S3StorageConfig bucket={self.bucket} region={self.region} location={self.location!r}>'


StorageConfig = Union[LocalStorageConfig, S3StorageConfig]


@dataclass
class EntryMetadata:
    name: str
    is_file: bool
    content_length: int = 0
    last_modified: Optional[datetime] = None


@dataclass
class Entry:
    """One object returned by a storage listing."""
    path: str
    metadata: EntryMetadata


@dataclass(frozen=True)
class ListOptions:
    latest_only: bool = False
    limit: int = 1000
