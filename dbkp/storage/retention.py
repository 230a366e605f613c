"""
Retention policy enforcement across storage providers.

Runs StorageProvider.cleanup() for every configured provider and collects
a summary; one provider failing does not stop the others.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from dbkp.errors import DbkpError
from .provider import StorageProvider


logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Manages retention policy enforcement for a set of providers.
    """

    def __init__(self, providers: List[StorageProvider], retention_days: int, dry_run: bool = False):
        """
        Initialize retention manager.

        Args:
            providers: Storage providers to clean up
            retention_days: Keep backups newer than this many days
            dry_run: Only report what would be deleted
        """
        self.providers = providers
        self.retention_days = retention_days
        self.dry_run = dry_run
        self.logs = []

    def enforce_all_policies(self) -> Dict[str, Any]:
        """
        Enforce the retention policy on all providers.

        Returns:
            Dict with summary of cleanup operations:
            {
                'providers_processed': int,
                'deleted_count': int,
                'deleted_bytes': int,
                'errors': List[str],
                'logs': List[str]
            }
        """
        self.logs = []
        self._log(
            f"Starting retention policy enforcement for {len(self.providers)} providers "
            f"(retention: {self.retention_days} days, dry_run: {self.dry_run})"
        )

        summary = {
            'providers_processed': 0,
            'deleted_count': 0,
            'deleted_bytes': 0,
            'errors': []
        }

        for provider in self.providers:
            try:
                count, size = provider.cleanup(self.retention_days, dry_run=self.dry_run)
                summary['providers_processed'] += 1
                summary['deleted_count'] += count
                summary['deleted_bytes'] += size
                self._log(f"{provider.config.name}: {count} backups, {size} bytes")
            except DbkpError as e:
                error_msg = f"Failed to enforce policy for storage {provider.config.name}: {e}"
                self._log(error_msg, level=logging.ERROR)
                summary['errors'].append(error_msg)

        self._log(
            f"Retention enforcement complete. "
            f"Providers: {summary['providers_processed']}, "
            f"Deleted: {summary['deleted_count']}, "
            f"Bytes: {summary['deleted_bytes']}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
