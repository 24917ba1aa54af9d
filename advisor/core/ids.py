from __future__ import annotations

import secrets
import string


ALPHABET = string.ascii_letters + string.digits
SESSION_ID_LENGTH = 16


def generate(length: int = SESSION_ID_LENGTH) -> str:
    """Random alphanumeric session id. Not checked against existing sessions."""
    return "".join(secrets.choice(ALPHABET) for _ in range(length))
