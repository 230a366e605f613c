"""
Storage module for dbkp.

This module handles where backups live:
- Backends (local filesystem and S3-compatible)
- Timestamp-ordered listing and streaming access
- Retention policy enforcement
"""

from .backends import LocalBackend, S3Backend
from .provider import StorageProvider
from .retention import RetentionManager

__all__ = [
    'LocalBackend',
    'S3Backend',
    'StorageProvider',
    'RetentionManager'
]
