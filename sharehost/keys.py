"""Generation of access keys, public file keys and on-disk names."""

import base64
import re
import secrets
import uuid

PUBLIC_KEY_BYTES = 6
API_KEY_BYTES = 16
DEFAULT_EXTENSION = ".png"

UNITS_TIME = {"d": 24, "h": 1}

_EXTENSION_PATTERN = re.compile(r"^\.[A-Za-z0-9_-]{1,16}$")
_DURATION_PATTERN = re.compile(r"(\d+)([dh])")


def generate_api_key(name: str) -> str:
    """Return a bearer key of the form ``{name}_{32 hex chars}``."""
    return f"{name}_{secrets.token_hex(API_KEY_BYTES)}"


def generate_public_key() -> str:
    """Return 48 random bits as unpadded base64url (8 characters)."""
    raw = secrets.token_bytes(PUBLIC_KEY_BYTES)
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def normalize_extension(extension: str) -> str:
    if extension and not extension.startswith("."):
        extension = f".{extension}"
    if not extension or not _EXTENSION_PATTERN.match(extension):
        return DEFAULT_EXTENSION
    return extension


def generate_storage_filename(extension: str) -> str:
    return f"{uuid.uuid4()}{normalize_extension(extension)}"


def parse_duration(text: str) -> float:
    """Parse durations such as ``1d``, ``12h`` or ``1d6h`` into hours.

    Unrecognised fragments are ignored, so ``"soon"`` parses to ``0``.
    """

    return float(
        sum(
            int(number) * UNITS_TIME[unit]
            for number, unit in _DURATION_PATTERN.findall(text or "")
        )
    )
