"""Supported hash algorithms and streaming buffer tuning."""

from __future__ import annotations

from enum import Enum
import hashlib
import re

from treehash.errors import ValidationError

KIB = 1024
MIB = 1024 * KIB

_HEX_RE = re.compile(r"[0-9a-fA-F]+")


class HashAlgorithm(str, Enum):
    """Fixed set of digest algorithms accepted by the engine."""

    MD5 = "MD5"
    SHA1 = "SHA1"
    SHA256 = "SHA256"
    SHA384 = "SHA384"
    SHA512 = "SHA512"

    @property
    def hashlib_name(self) -> str:
        return self.value.lower()

    def new(self):
        """Return a fresh incremental hash object."""
        return hashlib.new(self.hashlib_name)

    @classmethod
    def parse(cls, value: str | HashAlgorithm) -> HashAlgorithm:
        """Parse an identifier such as ``sha256``, ``SHA-256`` or ``Sha256``."""
        if isinstance(value, HashAlgorithm):
            return value
        key = str(value).strip().upper().replace("-", "").replace("_", "")
        try:
            return cls(key)
        except ValueError:
            allowed = ", ".join(member.value for member in cls)
            raise ValidationError(
                f"Unsupported hash algorithm: {value!r} (expected one of {allowed})"
            ) from None


# Rows are (max_file_size, buffer_size), ascending. Slow or wide digests read
# in smaller pieces; bigger files get bigger buffers.
_BUFFER_TABLE: dict[HashAlgorithm, tuple[tuple[int, int], ...]] = {
    HashAlgorithm.MD5: (
        (1 * MIB, 64 * KIB),
        (16 * MIB, 1 * MIB),
        (64 * MIB, 4 * MIB),
    ),
    HashAlgorithm.SHA1: (
        (1 * MIB, 64 * KIB),
        (16 * MIB, 1 * MIB),
        (64 * MIB, 4 * MIB),
    ),
    HashAlgorithm.SHA256: (
        (1 * MIB, 32 * KIB),
        (16 * MIB, 512 * KIB),
        (64 * MIB, 2 * MIB),
    ),
    HashAlgorithm.SHA384: (
        (1 * MIB, 16 * KIB),
        (16 * MIB, 256 * KIB),
        (64 * MIB, 1 * MIB),
    ),
    HashAlgorithm.SHA512: (
        (1 * MIB, 16 * KIB),
        (16 * MIB, 256 * KIB),
        (64 * MIB, 1 * MIB),
    ),
}


def buffer_size_for(algorithm: HashAlgorithm, file_size: int) -> int:
    """Pick a read buffer for a file below the large-file threshold."""
    rows = _BUFFER_TABLE[algorithm]
    for max_size, buffer_size in rows:
        if file_size <= max_size:
            return buffer_size
    return rows[-1][1]


def empty_digest(algorithm: HashAlgorithm | str) -> str:
    """Digest of zero bytes, lowercase hex."""
    return HashAlgorithm.parse(algorithm).new().hexdigest()


def is_hex_digest(value: str, algorithm: HashAlgorithm | None = None) -> bool:
    """True if ``value`` is lowercase/uppercase hex of the expected length."""
    if not value or _HEX_RE.fullmatch(value) is None:
        return False
    if algorithm is not None:
        return len(value) == algorithm.new().digest_size * 2
    return len(value) % 2 == 0
