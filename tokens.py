from __future__ import annotations

import re
import secrets

from utils import ValidationError, sha256_hex


# Uppercase letters without O and I; used for the lettered setup-code groups.
SETUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ"
# Mixed case + digits without O/I/l/o/0/1.
READABLE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnpqrstuvwxyz23456789"

API_KEY_PREFIX = "xapi-"
_API_KEY_RE = re.compile(r"^xapi-[a-f0-9]{32}$")
_SETUP_CODE_RE = re.compile(r"^[A-Z0-9]+-[A-HJ-NP-Z]{3}-[A-HJ-NP-Z]{4}$")


def random_bytes(n: int) -> bytes:
    if int(n) < 0:
        raise ValidationError("Byte count must be >= 0")
    return secrets.token_bytes(int(n))


def random_hex(n: int) -> str:
    """Hex string of `n` random bytes (2n characters)."""
    return random_bytes(n).hex()


def random_code(length: int, alphabet: str) -> str:
    """
    Uniform draw of `length` characters from `alphabet`.

    Bytes at or above the largest multiple of len(alphabet) are rejected, so alphabets
    whose size does not divide 256 carry no modulo bias.
    """

    chars = str(alphabet or "")
    if not chars:
        raise ValidationError("Alphabet must not be empty")
    if len(chars) > 256:
        raise ValidationError("Alphabet must have at most 256 characters")
    length = int(length)
    if length < 0:
        raise ValidationError("Code length must be >= 0")

    size = len(chars)
    limit = 256 - (256 % size)
    out: list[str] = []
    while len(out) < length:
        for b in random_bytes(max(16, (length - len(out)) * 2)):
            if b >= limit:
                continue
            out.append(chars[b % size])
            if len(out) == length:
                break
    return "".join(out)


def random_readable_code(length: int = 10) -> str:
    return random_code(length, READABLE_ALPHABET)


def formatted_setup_code(prefix: str = "CLAVE") -> str:
    """PREFIX-XXX-XXXX over the unambiguous uppercase alphabet."""
    p = str(prefix or "").strip().upper()
    if not p or not p.isalnum():
        raise ValidationError("Setup code prefix must be alphanumeric")
    return f"{p}-{random_code(3, SETUP_CODE_ALPHABET)}-{random_code(4, SETUP_CODE_ALPHABET)}"


def is_valid_setup_code_format(code: str) -> bool:
    return bool(_SETUP_CODE_RE.fullmatch(str(code or "")))


def generate_api_key() -> str:
    return API_KEY_PREFIX + random_hex(16)


def is_valid_api_key_format(api_key: str) -> bool:
    return bool(_API_KEY_RE.fullmatch(str(api_key or "")))


def hash_secret(value: str) -> str:
    return sha256_hex(value)
