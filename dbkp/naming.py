"""
Backup artifact naming convention.

Every artifact name carries its creation time as 14 consecutive digits,
YYYYMMDDHHMMSS in UTC, usually right before the extension:

    orders_20240301000000.sql

Ordering and retention only ever look at this component, never at the
object's content or the backend's modification time.
"""

import os
import re
from datetime import datetime, timezone
from typing import Optional

from dbkp.errors import TimestampParseError


TIMESTAMP_FORMAT = '%Y%m%d%H%M%S'

# 14 digits not surrounded by other digits
_TIMESTAMP_RE = re.compile(r'(?<!\d)(\d{14})(?!\d)')


def extract_timestamp_from_filename(filename: str) -> datetime:
    """
    Parse the embedded creation timestamp out of an artifact name.

    Only the basename is inspected; when several candidates appear, the last
    one wins.

    Args:
        filename: Object name or path

    Returns:
        Timezone-aware UTC datetime

    Raises:
        TimestampParseError: If no valid timestamp is present
    """
    basename = os.path.basename(filename.rstrip('/'))
    matches = _TIMESTAMP_RE.findall(basename)

    if not matches:
        raise TimestampParseError(f"No timestamp found in filename: {filename}")

    try:
        parsed = datetime.strptime(matches[-1], TIMESTAMP_FORMAT)
    except ValueError as e:
        raise TimestampParseError(f"Invalid timestamp in filename {filename}: {e}")

    return parsed.replace(tzinfo=timezone.utc)


def timestamp_sort_key(filename: str) -> datetime:
    """Sort key that places unparsable names after every dated one."""
    try:
        return extract_timestamp_from_filename(filename)
    except TimestampParseError:
        return datetime.min.replace(tzinfo=timezone.utc)


def generate_backup_filename(database: str, extension: str = 'sql', now: Optional[datetime] = None) -> str:
    """
    Generate a standardized backup filename.

    Format: {database}_{YYYYMMDDHHMMSS}.{ext}
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)

    # Sanitize database name (replace spaces and special chars with underscores)
    safe_name = "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in database
    )

    return f"{safe_name}_{now.strftime(TIMESTAMP_FORMAT)}.{extension.lstrip('.')}"
