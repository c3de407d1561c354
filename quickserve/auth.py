import base64
import binascii
from secrets import compare_digest
from typing import Optional

BASIC_PREFIX = "Basic "


def validate_basic_auth(header_value: Optional[str], expected_password: str) -> bool:
    """Check an ``Authorization`` header against the shared password.

    Only the password half of ``username:password`` is compared; any username
    is accepted. Malformed headers are a plain negative result.
    """

    if not header_value or not header_value.startswith(BASIC_PREFIX):
        return False

    encoded = header_value[len(BASIC_PREFIX):].strip()
    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return False

    _username, separator, provided = decoded.partition(":")
    if not separator:
        return False

    return compare_digest(
        provided.encode("utf-8"), (expected_password or "").encode("utf-8")
    )
