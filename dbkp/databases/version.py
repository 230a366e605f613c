"""
Server version string parsing.

Dump and restore utilities are version-coupled to the server, so the
connection asks the live server for its version before every transfer and
maps it to an engine-tagged Version.
"""

import re
from typing import Optional

from dbkp.models import Version


_POSTGRES_RE = re.compile(r'PostgreSQL\s+(\d+)(?:\.(\d+))?(?:\.(\d+))?')
_MARIADB_RE = re.compile(r'(\d+)\.(\d+)\.(\d+)-MariaDB', re.IGNORECASE)
_MYSQL_RE = re.compile(r'^\s*(\d+)\.(\d+)(?:\.(\d+))?')


def _to_int(value: Optional[str]) -> Optional[int]:
    return int(value) if value is not None else None


def parse_postgres_version(version_string: str) -> Optional[Version]:
    """
    Parse the output of ``SELECT version()``.

    >>> parse_postgres_version('PostgreSQL 15.4 (Debian 15.4-1.pgdg120+1) on x86_64-pc-linux-gnu')
    Version(engine='postgresql', major=15, minor=4, patch=None)
    """
    match = _POSTGRES_RE.search(version_string or '')
    if not match:
        return None

    major, minor, patch = match.groups()
    return Version('postgresql', int(major), _to_int(minor) or 0, _to_int(patch))


def parse_mysql_version(version_string: str) -> Optional[Version]:
    """
    Parse the output of ``SELECT VERSION()`` for MySQL and MariaDB.

    MariaDB identifies itself inside the string (``10.11.6-MariaDB-1``) and
    may be prefixed with the ``5.5.5-`` replication compatibility marker.
    """
    version_string = version_string or ''

    match = _MARIADB_RE.search(version_string)
    if match:
        major, minor, patch = (int(part) for part in match.groups())
        return Version('mariadb', major, minor, patch)

    match = _MYSQL_RE.match(version_string)
    if not match:
        return None

    major, minor, patch = match.groups()
    return Version('mysql', int(major), int(minor), _to_int(patch))
