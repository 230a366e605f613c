"""
PostgreSQL connection.

Backups are plain SQL produced by pg_dump with --clean --if-exists, so a
restore is a psql replay. Administrative statements run through psql
against the ``postgres`` maintenance database.
"""

import logging
from typing import List, Optional

from dbkp.config import Config
from dbkp.models import Version
from .base import DatabaseConnection
from .process import run_command
from .utilities import UtilityResolver
from .version import parse_postgres_version


logger = logging.getLogger(__name__)

EXCLUDED_SCHEMAS = (
    'information_schema',
    'pg_catalog',
    'pg_toast',
    'pg_temp*',
    'pg_toast_temp*',
)


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class PostgreSqlConnection(DatabaseConnection):
    """Connection to a PostgreSQL server."""

    driver = 'postgresql+psycopg2'
    admin_database = 'postgres'
    version_query = 'SELECT version()'
    dump_utility = 'pg_dump'
    restore_utility = 'psql'
    password_env = 'PGPASSWORD'

    def parse_version(self, version_string: str) -> Optional[Version]:
        return parse_postgres_version(version_string)

    def connection_args(self, database: str) -> List[str]:
        return [
            '-h', self.config.host,
            '-p', str(self.config.port),
            '-U', self.config.username,
            '-d', database,
        ]

    def dump_args(self, version: Version) -> List[str]:
        args = self.connection_args(self.config.database) + [
            '--format=plain',
            '--encoding=UTF8',
            '--schema=*',
            '--clean',
            '--if-exists',
            '--no-owner',
            '--blobs',
        ]
        args.extend(f'--exclude-schema={schema}' for schema in EXCLUDED_SCHEMAS)
        return args

    def restore_args(self, version: Version) -> List[str]:
        return self.connection_args(self.config.database)

    def _admin_command(self, resolver: UtilityResolver, sql: str, description: str):
        args = [resolver.resolve('psql')] + self.connection_args(self.admin_database) + ['-c', sql]
        run_command(
            args,
            self.environment(),
            f"psql ({description})",
            timeout=Config.COMMAND_TIMEOUT
        )

    def terminate_sessions(self, resolver: UtilityResolver):
        logger.info(f"Terminating other sessions on {self.config.database}")
        self._admin_command(
            resolver,
            "SELECT pg_terminate_backend(pg_stat_activity.pid) "
            "FROM pg_stat_activity "
            f"WHERE pg_stat_activity.datname = {quote_literal(self.config.database)} "
            "AND pid <> pg_backend_pid();",
            'terminate database connections'
        )

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
