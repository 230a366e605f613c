"""
Exception hierarchy for dbkp.

Every failure raised by the package derives from DbkpError so callers can
catch the whole family at once, while still being able to tell a storage
problem apart from a failed dump.
"""


class DbkpError(Exception):
    """Base class for all dbkp errors."""
    pass


class ConfigurationError(DbkpError):
    """Raised when a configuration struct is malformed or incomplete."""
    pass


class DatabaseConnectionError(DbkpError):
    """Raised when connecting to a database (or its SSH tunnel) fails."""
    pass


class VersionParseError(DbkpError):
    """Raised when a server version string cannot be understood."""
    pass


class SubprocessError(DbkpError):
    """
    Raised when a client utility fails to start or exits unsuccessfully.

    Attributes:
        command: Name of the utility that failed
        exit_code: Exit status of the child, or None if it never ran
        stderr: Captured standard error output
        stdout: Captured standard output (restore only)
    """

    def __init__(self, message, command=None, exit_code=None, stderr='', stdout=''):
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        self.stdout = stdout


class UtilityNotFoundError(SubprocessError):
    """Raised when no executable matches the requested engine version."""
    pass


class StreamIOError(DbkpError):
    """Raised when reading or writing a transfer stream fails mid-way."""
    pass


class StorageError(DbkpError):
    """Raised when a storage backend operation fails."""

    def __init__(self, message, path=None):
        super().__init__(message)
        self.path = path


class EntryNotFoundError(StorageError):
    """Raised when a listing that must yield an entry is empty."""
    pass


class TimestampParseError(DbkpError):
    """Raised when a filename does not carry a backup timestamp."""
    pass
