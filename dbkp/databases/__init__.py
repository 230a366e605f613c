"""
Database connections for dbkp.

This module handles everything engine-specific:
- Server version detection and client utility resolution
- SSH tunnelling to databases behind a bastion
- Backup and restore through the engine's client utilities
"""

from dbkp.errors import ConfigurationError
from dbkp.models import ConnectionConfig
from .base import DatabaseConnection
from .mysql import MySqlConnection
from .postgres import PostgreSqlConnection
from .tunnel import SshTunnel
from .utilities import UtilityResolver


_CONNECTION_TYPES = {
    'postgresql': PostgreSqlConnection,
    'mysql': MySqlConnection,
    'mariadb': MySqlConnection,
}


def create_connection(config: ConnectionConfig) -> DatabaseConnection:
    """
    Factory function to create the connection for an engine.

    Args:
        config: Database configuration

    Returns:
        PostgreSqlConnection or MySqlConnection instance

    Raises:
        ConfigurationError: If the connection type is not supported
    """
    connection_class = _CONNECTION_TYPES.get(config.connection_type)
    if connection_class is None:
        raise ConfigurationError(f"Invalid connection type: {config.connection_type}")
    return connection_class(config)


__all__ = [
    'create_connection',
    'DatabaseConnection',
    'PostgreSqlConnection',
    'MySqlConnection',
    'SshTunnel',
    'UtilityResolver'
]
