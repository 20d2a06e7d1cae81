"""Six-digit one-time verification codes."""

import secrets

CODE_LENGTH = 6
_CODE_MIN = 10 ** (CODE_LENGTH - 1)  # 100000
_CODE_SPAN = 9 * _CODE_MIN  # 900000 values: 100000..999999


def generate_code() -> str:
    """Return a code drawn uniformly from 100000-999999 using the OS CSPRNG."""
    return str(_CODE_MIN + secrets.randbelow(_CODE_SPAN))
