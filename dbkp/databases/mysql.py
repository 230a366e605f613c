"""
MySQL and MariaDB connection.

Both engines share the protocol and the client flags; the server version
string tells them apart so MariaDB gets its own (renamed) utilities.
"""

import logging
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from dbkp.config import Config
from dbkp.errors import DatabaseConnectionError
from dbkp.models import Version
from .base import DatabaseConnection
from .process import run_command
from .utilities import UtilityResolver
from .version import parse_mysql_version


logger = logging.getLogger(__name__)

# ER_NO_SUCH_THREAD: the session ended between listing and KILL
_NO_SUCH_THREAD = 1094


def quote_identifier(name: str) -> str:
    return '`' + name.replace('`', '``') + '`'


class MySqlConnection(DatabaseConnection):
    """Connection to a MySQL or MariaDB server."""

    driver = 'mysql+pymysql'
    admin_database = 'information_schema'
    version_query = 'SELECT VERSION()'
    dump_utility = 'mysqldump'
    restore_utility = 'mysql'
    password_env = 'MYSQL_PWD'

    def parse_version(self, version_string: str) -> Optional[Version]:
        return parse_mysql_version(version_string)

    def connection_args(self) -> List[str]:
        # "localhost" would otherwise mean the unix socket
        return [
            '--protocol=TCP',
            '-h', self.config.host,
            '-P', str(self.config.port),
            '-u', self.config.username,
        ]

    def dump_args(self, version: Version) -> List[str]:
        args = self.connection_args() + [
            '--single-transaction',
            '--routines',
            '--triggers',
            '--events',
            '--hex-blob',
            '--add-drop-table',
            '--default-character-set=utf8mb4',
        ]
        if version.engine == 'mysql':
            args.append('--set-gtid-purged=OFF')
        args.append(self.config.database)
        return args

    def restore_args(self, version: Version) -> List[str]:
        return self.connection_args() + [self.config.database]

    def _admin_command(self, resolver: UtilityResolver, sql: str, description: str):
        args = [resolver.resolve('mysql')] + self.connection_args() + ['-e', sql]
        run_command(
            args,
            self.environment(),
            f"mysql ({description})",
            timeout=Config.COMMAND_TIMEOUT
        )

    def terminate_sessions(self, resolver: UtilityResolver):
        logger.info(f"Terminating other sessions on {self.config.database}")

        try:
            with self.engine.connect() as conn:
                session_ids = conn.execute(
                    text(
                        "SELECT ID FROM information_schema.PROCESSLIST "
                        "WHERE DB = :database AND ID <> CONNECTION_ID()"
                    ),
                    {'database': self.config.database}
                ).scalars().all()

                for session_id in session_ids:
                    try:
                        conn.execute(text(f"KILL {int(session_id)}"))
                    except DBAPIError as e:
                        if e.orig is not None and e.orig.args and e.orig.args[0] == _NO_SUCH_THREAD:
                            continue
                        raise
        except SQLAlchemyError as e:
            raise DatabaseConnectionError(f"Failed to terminate database connections: {e}")

    def drop_database(self, resolver: UtilityResolver):
        logger.info(f"Dropping database {self.config.database}")
        self._admin_command(
            resolver,
            f"DROP DATABASE IF EXISTS {quote_identifier(self.config.database)};",
            'drop database'
        )

    def create_database(self, resolver: UtilityResolver):
        logger.info(f"Creating database {self.config.database}")
        self._admin_command(
            resolver,
            f"CREATE DATABASE {quote_identifier(self.config.database)};",
            'create database'
        )
