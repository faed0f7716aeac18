"""Short correlation codes for bank-transfer payments.

A reference code is ``<prefix><6 digits><8 hex>`` (16 characters with the
default two-letter prefix). The digits are the last six digits of the unix
timestamp in seconds, the hex part is the first four bytes of
SHA-256(transaction_number). Payers copy the code into a transfer memo, so
it has to stay short and survive banking apps appending their own text.

Codes are not cryptographically unique: two transactions with the same
number created in the same second collide, and anybody who knows a
transaction number can predict the hash part. The webhook path still checks
the transferred amount, and unmatched transfers go to manual review.
"""

import hashlib
import re
from datetime import datetime

from payflow.core.clock import utcnow

TIMESTAMP_DIGITS = 6
HASH_HEX_CHARS = 8


def _short_hash(transaction_number: str) -> str:
    digest = hashlib.sha256(transaction_number.encode("utf-8")).digest()
    return digest[: HASH_HEX_CHARS // 2].hex().upper()


def generate_reference_code(
    transaction_number: str,
    *,
    prefix: str = "SP",
    now: datetime | None = None,
) -> str:
    moment = now or utcnow()
    timestamp = str(int(moment.timestamp()))[-TIMESTAMP_DIGITS:].rjust(TIMESTAMP_DIGITS, "0")
    return f"{prefix.upper()}{timestamp}{_short_hash(transaction_number)}"


def _pattern(prefix: str) -> re.Pattern[str]:
    return re.compile(
        rf"{re.escape(prefix)}(\d{{{TIMESTAMP_DIGITS}}})([0-9A-F]{{{HASH_HEX_CHARS}}})",
        re.IGNORECASE,
    )


def extract_reference_code(text: str | None, *, prefix: str = "SP") -> str | None:
    """Find the first well-formed reference code in free text.

    Returns ``None`` when nothing matches; callers treat that as
    "payment still pending".
    """
    if not text:
        return None
    match = _pattern(prefix).search(text)
    if not match:
        return None
    return match.group(0).upper()
