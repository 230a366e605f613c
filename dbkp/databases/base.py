"""
Engine-independent database connection.

A connection owns a small SQLAlchemy pool for metadata queries, optionally
an SSH tunnel, and drives the engine's client utilities for backup and
restore. Engine subclasses only describe how to talk to their server: the
version query, the utility names and their arguments, and the
administrative statements run before a restore.
"""

import os
import logging
import weakref
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError

from dbkp.config import Config
from dbkp.errors import DatabaseConnectionError, StreamIOError, VersionParseError
from dbkp.models import ConnectionConfig, DatabaseMetadata, RestoreOptions, Version
from .process import ManagedProcess, relay
from .tunnel import SshTunnel
from .utilities import UtilityResolver


logger = logging.getLogger(__name__)


def _release(engine, tunnel):
    engine.dispose()
    if tunnel is not None:
        tunnel.close()


class DatabaseConnection(ABC):
    """
    Base class for engine connections.

    At most one backup or restore may run per instance at a time; the
    connection does not lock, callers must serialise.
    """

    driver: str = None
    admin_database: Optional[str] = None
    version_query: str = None
    dump_utility: str = None
    restore_utility: str = None
    password_env: str = None

    def __init__(self, config: ConnectionConfig):
        """
        Initialize the connection.

        Args:
            config: Database configuration. When it carries an SSH tunnel,
                the tunnel is opened here and the effective host/port
                become the tunnel's loopback endpoint.

        Raises:
            DatabaseConnectionError: If the tunnel or pool cannot be created
        """
        self.remote_config = config
        self._tunnel = None
        self._process: Optional[ManagedProcess] = None

        if config.ssh_tunnel is not None:
            self._tunnel = SshTunnel(config.ssh_tunnel, config.host, config.port)
            config = config.with_endpoint('localhost', self._tunnel.local_port)

        self.config = config

        try:
            self.engine = self._create_engine()
        except Exception as e:
            if self._tunnel is not None:
                self._tunnel.close()
            raise DatabaseConnectionError(f"Failed to initialize connection pool: {e}")

        self._finalizer = weakref.finalize(self, _release, self.engine, self._tunnel)

    def _create_engine(self):
        url = URL.create(
            self.driver,
            username=self.config.username,
            password=self.config.password,
            host=self.config.host,
            port=self.config.port,
            database=self.admin_database
        )

        return create_engine(
            url,
            pool_size=Config.POOL_SIZE,
            max_overflow=0,
            pool_timeout=Config.POOL_TIMEOUT,
            pool_pre_ping=True,
            connect_args={'connect_timeout': int(Config.POOL_TIMEOUT)}
        )

    @property
    def tunnel(self) -> Optional[SshTunnel]:
        return self._tunnel

    @property
    def closed(self) -> bool:
        return not self._finalizer.alive

    def close(self):
        """Dispose of the pool and tear down the tunnel. Idempotent."""
        self.cancel()
        self._finalizer()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.config!r}>'

    # Engine-specific hooks

    @abstractmethod
    def parse_version(self, version_string: str) -> Optional[Version]:
        """Parse the result of version_query."""

    @abstractmethod
    def dump_args(self, version: Version) -> List[str]:
        """Arguments for the dump utility, including connection flags."""

    @abstractmethod
    def restore_args(self, version: Version) -> List[str]:
        """Arguments for the restore client, including connection flags."""

    @abstractmethod
    def terminate_sessions(self, resolver: UtilityResolver):
        """Disconnect every other session on the target database."""

    @abstractmethod
    def drop_database(self, resolver: UtilityResolver):
        """Drop the target database if it exists."""

    @abstractmethod
    def create_database(self, resolver: UtilityResolver):
        """Create the (empty) target database."""

    # Shared behaviour

    def environment(self) -> dict:
        """Child environment; credentials never go on the command line."""
        env = os.environ.copy()
        if self.config.password:
            env[self.password_env] = self.config.password
        return env

    def get_metadata(self) -> DatabaseMetadata:
        """
        Query the live server for its version.

        Not cached: the server may be upgraded between two calls.

        Raises:
            DatabaseConnectionError: If the query fails
            VersionParseError: If the version string is not recognised
        """
        try:
            with self.engine.connect() as conn:
                version_string = conn.execute(text(self.version_query)).scalar()
        except SQLAlchemyError as e:
            raise DatabaseConnectionError(f"Failed to get database version: {e}")

        version = self.parse_version(version_string)
        if version is None:
            raise VersionParseError(f"Failed to parse server version string: {version_string!r}")

        return DatabaseMetadata(version=version)

    def test(self) -> bool:
        """
        Run a trivial round-trip query.

        Returns:
            True if the server answered

        Raises:
            DatabaseConnectionError: If the server is unreachable or rejects us
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text('SELECT 1'))
            return True
        except SQLAlchemyError as e:
            raise DatabaseConnectionError(f"Connection test failed: {e}")

    def get_resolver(self) -> UtilityResolver:
        return UtilityResolver(self.get_metadata().version)

    def backup(self, sink, cancellation_check: Optional[Callable] = None) -> int:
        """
        Dump the database into sink.

        Args:
            sink: Object with a write(bytes) method
            cancellation_check: Called between chunks; raise to abort

        Returns:
            Number of bytes written to sink

        Raises:
            SubprocessError: If the dump utility cannot start or fails
            StreamIOError: If writing to sink fails
        """
        resolver = self.get_resolver()
        name = self.dump_utility
        args = [resolver.resolve(name)] + self.dump_args(resolver.version)

        logger.info(f"Starting backup of {self.config.database} with {name} ({resolver.version})")

        with ManagedProcess(args, self.environment(), name, pipe_stdout=True,
                            timeout=Config.TRANSFER_TIMEOUT) as child:
            self._process = child
            try:
                try:
                    total = relay(
                        child.stdout.read, sink.write,
                        cancellation_check=cancellation_check,
                        source=name, destination='backup sink'
                    )
                except BrokenPipeError as e:
                    raise StreamIOError(f"Failed to write backup data: {e}")

                returncode = child.wait()
                child.check(returncode)
            finally:
                self._process = None

        logger.info(f"Backup of {self.config.database} completed ({total} bytes)")
        return total

    def restore(self, source, cancellation_check: Optional[Callable] = None) -> int:
        """
        Drop, recreate and restore the database from source.

        This is destructive: the target database is dropped first. Use
        restore_with_options() to restore into the existing database.
        """
        return self.restore_with_options(
            source,
            RestoreOptions(drop_database_first=True),
            cancellation_check=cancellation_check
        )

    def restore_with_options(self, source, options: RestoreOptions,
                             cancellation_check: Optional[Callable] = None) -> int:
        """
        Replay a dump from source into the target database.

        Steps, each aborting the restore on failure:
        1. terminate other sessions on the target database
        2. if options.drop_database_first, drop and recreate it
        3. stream source into the restore client's stdin

        Args:
            source: Object with a read(n) method returning b'' at EOF
            options: Restore options
            cancellation_check: Called between chunks; raise to abort

        Returns:
            Number of bytes sent to the restore client

        Raises:
            SubprocessError: If any step fails; carries stderr and stdout
            StreamIOError: If reading from source fails
        """
        resolver = self.get_resolver()

        logger.info(
            f"Starting restore of {self.config.database} "
            f"(drop_database_first={options.drop_database_first})"
        )

        self.terminate_sessions(resolver)

        if options.drop_database_first:
            self.drop_database(resolver)
            self.create_database(resolver)

        name = self.restore_utility
        args = [resolver.resolve(name)] + self.restore_args(resolver.version)

        with ManagedProcess(args, self.environment(), name, pipe_stdin=True,
                            timeout=Config.TRANSFER_TIMEOUT) as child:
            self._process = child
            try:
                try:
                    total = relay(
                        source.read, child.stdin.write,
                        cancellation_check=cancellation_check,
                        source='backup source', destination=name
                    )
                    # flush and signal end of input
                    child.close_stdin()
                except BrokenPipeError:
                    returncode = child.wait()
                    child.check(returncode, include_stdout=True)
                    raise StreamIOError(f"{name} stopped reading before the backup was fully sent")

                returncode = child.wait()
                child.check(returncode, include_stdout=True)
            finally:
                self._process = None

        logger.info(f"Restore of {self.config.database} completed ({total} bytes)")
        return total

    def cancel(self):
        """Kill the running backup/restore child process group, if any."""
        process = self._process
        if process is not None:
            logger.warning(f"Cancelling {process.name} (pid {process.pid})")
            process.kill()
