"""
Client utility resolution.

Locates the dump/restore executable matching a server version. Installs
commonly carry several client versions side by side, laid out as
``{root}/{engine}/{major}/bin/{name}``; PostgreSQL packages on Debian use
``/usr/lib/postgresql/{major}/bin``. PATH is the last resort.
"""

import os
import shutil
import logging
from typing import List, Optional

from dbkp.config import Config
from dbkp.errors import UtilityNotFoundError
from dbkp.models import Version


logger = logging.getLogger(__name__)

# MariaDB ships renamed binaries; the mysql names are compatibility links
_ALIASES = {
    'mariadb': {
        'mysqldump': ['mariadb-dump', 'mysqldump'],
        'mysql': ['mariadb', 'mysql'],
    },
}


class UtilityResolver:
    """
    Resolves the executable for a utility of a given engine version.
    """

    def __init__(self, version: Version, search_dirs: Optional[List[str]] = None):
        """
        Args:
            version: Engine-tagged server version
            search_dirs: Root directories holding versioned utility builds.
                Defaults to Config.UTILITIES_DIR when set.
        """
        self.version = version
        if search_dirs is None:
            search_dirs = [Config.UTILITIES_DIR] if Config.UTILITIES_DIR else []
        self.search_dirs = search_dirs

    @property
    def version_dir(self) -> str:
        # PostgreSQL before 10 versioned its clients by major.minor
        if self.version.engine == 'postgresql' and self.version.major < 10:
            return f'{self.version.major}.{self.version.minor}'
        return str(self.version.major)

    def _names(self, bin_name: str) -> List[str]:
        return _ALIASES.get(self.version.engine, {}).get(bin_name, [bin_name])

    def candidates(self, bin_name: str) -> List[str]:
        """List candidate paths in resolution order."""
        paths = []

        for name in self._names(bin_name):
            for root in self.search_dirs:
                base = os.path.join(root, self.version.engine, self.version_dir)
                paths.append(os.path.join(base, 'bin', name))
                paths.append(os.path.join(base, name))

            if self.version.engine == 'postgresql':
                paths.append(os.path.join('/usr/lib/postgresql', self.version_dir, 'bin', name))

        return paths

    def resolve(self, bin_name: str) -> str:
        """
        Resolve a utility to a runnable path.

        Args:
            bin_name: Canonical utility name (pg_dump, psql, mysqldump, mysql)

        Returns:
            Absolute path to an executable file

        Raises:
            UtilityNotFoundError: If no candidate is executable
        """
        for path in self.candidates(bin_name):
            if os.path.isfile(path) and os.access(path, os.X_OK):
                logger.debug(f"Resolved {bin_name} for {self.version.engine} {self.version} to {path}")
                return path

        for name in self._names(bin_name):
            path = shutil.which(name)
            if path:
                logger.debug(f"Resolved {bin_name} from PATH to {path}")
                return path

        raise UtilityNotFoundError(
            f"No {bin_name} found for {self.version.engine} {self.version}",
            command=bin_name
        )
