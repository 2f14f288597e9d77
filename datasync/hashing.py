"""Content hashes used to compare files held at a source and at a destination."""

from __future__ import annotations

import hashlib
from enum import Enum
from typing import Protocol, Union


class HashType(str, Enum):
    """Names of the hash algorithms a file may be checked with."""

    MD5 = "MD5"
    SHA1 = "SHA-1"
    SHA256 = "SHA-256"
    SHA512 = "SHA-512"
    GIT_HASH = "git-hash"
    QUICK_XOR_HASH = "quickXorHash"
    FILE_SIZE = "FileSize"


class UnsupportedHashError(ValueError):
    """Raised when a hash type is not known."""


class _Hasher(Protocol):
    def update(self, data: bytes) -> None: ...

    def digest(self) -> bytes: ...

    def hexdigest(self) -> str: ...


class FileSizeHash:
    """A pseudo hash whose digest is the number of bytes seen, as 8 little-endian bytes."""

    name = "filesize"
    digest_size = 8
    block_size = 64

    def __init__(self, data: bytes = b"") -> None:
        self.file_size = 0
        if data:
            self.update(data)

    def update(self, data: bytes) -> None:
        self.file_size += len(memoryview(data))

    def digest(self) -> bytes:
        return self.file_size.to_bytes(8, "little")

    def hexdigest(self) -> str:
        return self.digest().hex()

    def reset(self) -> None:
        self.file_size = 0


class QuickXorHash:
    """The quickXorHash algorithm: bytes are XOR-ed into a 160-bit rotating register."""

    name = "quickxorhash"
    digest_size = 20
    block_size = 64
    _SHIFT = 11
    _WIDTH_BITS = digest_size * 8

    def __init__(self, data: bytes = b"") -> None:
        self.reset()
        if data:
            self.update(data)

    def update(self, data: bytes) -> None:
        cells = self._cells
        position = self._bit_position
        payload = bytes(data)
        for byte in payload:
            index, offset = divmod(position, 8)
            shifted = byte << offset
            cells[index] ^= shifted & 0xFF
            cells[(index + 1) % self.digest_size] ^= shifted >> 8
            position = (position + self._SHIFT) % self._WIDTH_BITS
        self._bit_position = position
        self._length += len(payload)

    def digest(self) -> bytes:
        result = bytearray(self._cells)
        size_bytes = self._length.to_bytes(8, "little")
        tail = self.digest_size - 8
        for offset, size_byte in enumerate(size_bytes):
            result[tail + offset] ^= size_byte
        return bytes(result)

    def hexdigest(self) -> str:
        return self.digest().hex()

    def reset(self) -> None:
        self._cells = bytearray(self.digest_size)
        self._bit_position = 0
        self._length = 0


def _git_blob_hasher(file_size: int) -> _Hasher:
    hasher = hashlib.sha1()
    hasher.update(f"blob {file_size}\x00".encode())
    return hasher


_FACTORIES = {
    HashType.MD5.value.lower(): lambda size: hashlib.md5(),
    HashType.SHA1.value.lower(): lambda size: hashlib.sha1(),
    HashType.SHA256.value.lower(): lambda size: hashlib.sha256(),
    HashType.SHA512.value.lower(): lambda size: hashlib.sha512(),
    HashType.GIT_HASH.value.lower(): _git_blob_hasher,
    HashType.QUICK_XOR_HASH.value.lower(): lambda size: QuickXorHash(),
    HashType.FILE_SIZE.value.lower(): lambda size: FileSizeHash(),
}


def new_hasher(hash_type: Union[HashType, str], file_size: int = 0) -> _Hasher:
    """Return a fresh hasher for ``hash_type`` (matched case-insensitively).

    ``file_size`` is needed only by the git blob hash, whose header carries it.
    """
    name = hash_type.value if isinstance(hash_type, HashType) else str(hash_type)
    try:
        factory = _FACTORIES[name.lower()]
    except KeyError:
        raise UnsupportedHashError(f"unsupported hash type: {name}") from None
    return factory(file_size)