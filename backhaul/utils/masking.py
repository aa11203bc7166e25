"""
Masking helpers for secret values shown to API clients.
"""

import re

MASK = '********'

# Matches the "user:password@" segment of a URL-style connection string
CONNECTION_STRING_CREDENTIALS = re.compile(r'//([^:/@]+):([^@]+)@')

# Output shape of mask_value for values longer than 4 characters
_MASKED_VALUE = re.compile(r'.{4}\*{4}', re.DOTALL)


def mask_value(value: str) -> str:
    """Show the first 4 characters followed by ****, or a fixed mask for short values."""
    if len(value) <= 4:
        return MASK
    return value[:4] + '****'


def is_masked_value(value) -> bool:
    if not isinstance(value, str):
        return False
    return value == MASK or _MASKED_VALUE.fullmatch(value) is not None


def mask_connection_string(connection_string: str) -> str:
    """Hide the password of a connection string while keeping its structure."""
    return CONNECTION_STRING_CREDENTIALS.sub(
        lambda match: f'//{match.group(1)}:****@',
        connection_string,
        count=1
    )
