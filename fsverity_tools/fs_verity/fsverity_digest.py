#!/usr/bin/env python3
"""Compute fs-verity file digests offline (unprivileged).

This tool computes the digest the Linux fs-verity feature assigns to a file
once verity is enabled on it. It does *not* touch the kernel; it reads the
file contents and reproduces the kernel's Merkle tree and descriptor hashing
in user space. Useful to predict a digest before enabling verity, or to check
file contents against an expected digest on a machine without fs-verity.

High-level algorithm
--------------------
- Split the file into blocks (block_size, 4096 by default).
- Hash each block, zero-padded, with the salted hash state (level 0).
- Pack level 0 digests into blocks and hash those (level 1), and so on
  until a single block remains; its hash is the root hash.
- Hash the 256-byte fs-verity descriptor (version, algorithm, block size,
  salt size, data size, root hash, salt). That hash is the file digest.

The tree is never materialized. Only one partially filled block per level is
kept (as a running hash state), so memory stays O(tree height) and input may
arrive in chunks of any size.

Salt
----
A non-empty salt is zero-padded to the hash function's input block size
(64 bytes for sha256, 128 for sha512) and hashed in front of every tree
block. The descriptor itself is hashed without the salt prefix; the salt is
part of the descriptor fields instead.

References
----------
- Linux kernel documentation: Documentation/filesystems/fsverity.rst
- fs/verity/open.c, fs/verity/fsverity_private.h (struct fsverity_descriptor)
- fsverity-utils lib/compute_digest.c
"""

from __future__ import annotations

import argparse
import enum
import hashlib
import struct
from functools import partial
from typing import BinaryIO, List, Optional

DEFAULT_BLOCK_SIZE = 4096
MAX_BLOCK_SIZE = 4096
MAX_SALT_SIZE = 32

# Values that do not affect the digest.
READ_SIZE = 1024 * 1024

# struct fsverity_descriptor: version, hash_algorithm, log_blocksize,
# salt_size, sig_size (le32), data_size (le64), root_hash[64], salt[32],
# reserved[144]. 's' fields are zero padded by struct.
FS_VERITY_VERSION = 1
DESCRIPTOR_FORMAT = "<BBBBIQ64s32s144x"
DESCRIPTOR_SIZE = struct.calcsize(DESCRIPTOR_FORMAT)  # 256

_ZEROES = bytes(64)


class HashAlgorithm(enum.IntEnum):
    """Merkle tree hash algorithms. Values are the kernel's FS_VERITY_HASH_ALG_* ids."""

    SHA256 = 1
    SHA512 = 2

    def __str__(self) -> str:
        return self.name.lower()

    @classmethod
    def from_name(cls, name: str) -> "HashAlgorithm":
        try:
            return cls[name.strip().upper()]
        except KeyError:
            raise ValueError(f"Unsupported hash algorithm: {name}") from None

    @property
    def digest_size(self) -> int:
        return _ALGORITHM_SIZES[self][0]

    @property
    def input_block_size(self) -> int:
        """Compression function input size; the salt is padded to this."""
        return _ALGORITHM_SIZES[self][1]

    def new(self) -> "VerityHash":
        return VerityHash(self)


# (digest size, input block size)
_ALGORITHM_SIZES = {
    HashAlgorithm.SHA256: (32, 64),
    HashAlgorithm.SHA512: (64, 128),
}


class VerityHash:
    """Running hash state, plus the zero padding helpers the tree needs."""

    __slots__ = ("algorithm", "_h")

    def __init__(self, algorithm: HashAlgorithm, h: Optional["hashlib._Hash"] = None):
        self.algorithm = algorithm
        self._h = hashlib.new(str(algorithm)) if h is None else h

    @property
    def digest_size(self) -> int:
        return self.algorithm.digest_size

    def update(self, data) -> None:
        if self._h is None:
            raise RuntimeError("hash state already finalized")
        self._h.update(data)

    def update_zeroes(self, amount: int) -> None:
        while amount:
            n = min(len(_ZEROES), amount)
            self.update(_ZEROES[:n])
            amount -= n

    def update_padded(self, data, padded_size: int) -> None:
        if len(data) > padded_size:
            raise ValueError(f"{len(data)} bytes do not fit in {padded_size} padded bytes")
        self.update(data)
        self.update_zeroes(padded_size - len(data))

    def copy(self) -> "VerityHash":
        if self._h is None:
            raise RuntimeError("hash state already finalized")
        return VerityHash(self.algorithm, self._h.copy())

    def finalize(self) -> bytes:
        if self._h is None:
            raise RuntimeError("hash state already finalized")
        h, self._h = self._h, None
        return h.digest()


class FixedSizeBlock:
    """A block of `size` bytes to be hashed, zero-padded if not filled.

    Only the hash state and the number of bytes still missing are kept,
    never the block contents.
    """

    __slots__ = ("seed", "size", "hash", "remaining")

    def __init__(self, seed: VerityHash, size: int):
        self.seed = seed
        self.size = size
        self.hash = seed.copy()
        self.remaining = size

    def append(self, data) -> None:
        if len(data) > self.remaining:
            raise ValueError(f"{len(data)} bytes do not fit, {self.remaining} remaining")
        self.hash.update(data)
        self.remaining -= len(data)

    def overflowing_append(self, data):
        """Append what fits and return the rest."""
        n = min(self.remaining, len(data))
        self.append(data[:n])
        return data[n:]

    def finalize(self) -> bytes:
        self.hash.update_zeroes(self.remaining)
        self.remaining = 0
        return self.hash.finalize()

    def clone_and_append(self, data) -> "FixedSizeBlock":
        # Seeded from the salted initial state, not from this block's state.
        block = FixedSizeBlock(self.seed, self.size)
        block.append(data)
        return block

    def copy(self) -> "FixedSizeBlock":
        block = FixedSizeBlock.__new__(FixedSizeBlock)
        block.seed = self.seed
        block.size = self.size
        block.hash = self.hash.copy()
        block.remaining = self.remaining
        return block


class MerkleDigest:
    """
    Streaming fs-verity digest, with a hashlib-like interface.

        h = MerkleDigest(HashAlgorithm.SHA256, block_size=4096, salt=b"")
        h.update(b"...")
        h.update(b"...")
        digest = h.finalize()

    Feeding the same bytes in different chunk sizes gives the same digest.

    'levels' is the currently open block at each level of the tree. Level 0
    receives file data. When the block at level n fills up, its hash is
    appended to the block at level n + 1 and level n starts a new block
    (which may cascade further up).

    Invariants before and after update():
    - level 0 is never empty once created. It *may* be completely full.
    - levels 1..n are never full; they always have room for one more
      digest. They *may* be empty.

    Level 0 may be full because a full block is flushed as soon as more data
    arrives, and at finalize() a full block needs no special case. Higher
    levels keep room for a digest so a digest is never split across two
    blocks; only file data may span block boundaries. The block size is a
    power of two and so a multiple of the digest size.
    """

    def __init__(
        self,
        algorithm: HashAlgorithm = HashAlgorithm.SHA256,
        block_size: int = DEFAULT_BLOCK_SIZE,
        salt: bytes = b"",
    ):
        algorithm = HashAlgorithm(algorithm)
        salt = bytes(salt)

        if block_size <= 0 or block_size & (block_size - 1):
            raise ValueError("block_size must be power of two")
        if block_size > MAX_BLOCK_SIZE:
            raise ValueError(f"block_size must be <= {MAX_BLOCK_SIZE}")
        if algorithm.digest_size * 2 > block_size:
            raise ValueError(f"block_size {block_size} too small for {algorithm} digest")
        if len(salt) > MAX_SALT_SIZE:
            raise ValueError(f"salt must be <= {MAX_SALT_SIZE} bytes (got {len(salt)})")
        # The salt is padded to one input block. Holds for sha256/sha512 given
        # MAX_SALT_SIZE, but must be checked for every algorithm.
        if len(salt) > algorithm.input_block_size:
            raise ValueError(f"salt longer than {algorithm} input block size")

        self.algorithm = algorithm
        self.block_size = block_size
        self.salt = salt

        salted = algorithm.new()
        if salt:
            salted.update_padded(salt, algorithm.input_block_size)
        self._salted = salted

        self.reset()

    @property
    def digest_size(self) -> int:
        return self.algorithm.digest_size

    def reset(self) -> None:
        """Discard all input, keeping algorithm, block size and salt."""
        self._levels: List[FixedSizeBlock] = []
        self.total_size = 0
        self._finalized = False

    def _check_open(self) -> None:
        if self._finalized:
            raise RuntimeError("digest already finalized")

    def _new_block(self, data) -> FixedSizeBlock:
        block = FixedSizeBlock(self._salted, self.block_size)
        block.append(data)
        return block

    def update(self, data) -> None:
        self._check_open()
        digest_size = self.algorithm.digest_size
        view = memoryview(data).cast("B")

        for start in range(0, len(view), self.block_size):
            chunk = view[start:start + self.block_size]

            overflow = chunk
            keep_space_for_one_digest = False  # True above level 0

            for i, level in enumerate(self._levels):
                overflow = level.overflowing_append(overflow)
                if not overflow:
                    if not keep_space_for_one_digest or level.remaining >= digest_size:
                        break

                # Replace the block first; leftover file data seeds the new one.
                self._levels[i] = level.clone_and_append(overflow)
                overflow = level.finalize()
                keep_space_for_one_digest = True

            if overflow:
                self._levels.append(self._new_block(overflow))

            self.total_size += len(chunk)

    def _root_hash(self, levels: List[FixedSizeBlock]) -> bytes:
        # Zero length files have an all-zero root hash; nothing is hashed.
        overflow = b""
        for level in levels:
            level.append(overflow)
            overflow = level.finalize()
        return overflow or bytes(self.algorithm.digest_size)

    def _pack_descriptor(self, root_hash: bytes) -> bytes:
        return struct.pack(
            DESCRIPTOR_FORMAT,
            FS_VERITY_VERSION,
            int(self.algorithm),
            self.block_size.bit_length() - 1,
            len(self.salt),
            0,  # sig_size
            self.total_size,
            root_hash,
            self.salt,
        )

    def root_hash(self) -> bytes:
        """Merkle tree root hash of the data so far. Does not finalize."""
        self._check_open()
        return self._root_hash([level.copy() for level in self._levels])

    def descriptor(self) -> bytes:
        """The 256-byte fs-verity descriptor of the data so far. Does not finalize."""
        return self._pack_descriptor(self.root_hash())

    def finalize(self) -> bytes:
        """Flush all levels and return the file digest. Consumes the object."""
        self._check_open()
        self._finalized = True
        levels, self._levels = self._levels, []
        root_hash = self._root_hash(levels)

        h = self.algorithm.new()
        h.update(self._pack_descriptor(root_hash))
        return h.finalize()

    digest = finalize

    def hexdigest(self) -> str:
        return self.finalize().hex()


def parse_salt_hex(text: str) -> bytes:
    text = text.strip().lower()
    if text.startswith("0x"):
        text = text[2:]
    try:
        salt = bytes.fromhex(text)
    except ValueError:
        raise ValueError("Invalid salt (must be a hex string).") from None
    if len(salt) > MAX_SALT_SIZE:
        raise ValueError(f"salt must be <= {MAX_SALT_SIZE} bytes (got {len(salt)})")
    return salt


def format_digest(algorithm: HashAlgorithm, digest: bytes) -> str:
    return "%s:%s" % (algorithm, digest.hex())


def digest_stream(
    fin: BinaryIO,
    algorithm: HashAlgorithm = HashAlgorithm.SHA256,
    block_size: int = DEFAULT_BLOCK_SIZE,
    salt: bytes = b"",
    read_size: int = READ_SIZE,
) -> bytes:
    h = MerkleDigest(algorithm, block_size=block_size, salt=salt)
    for data in iter(partial(fin.read, read_size), b""):
        h.update(data)
    return h.finalize()


def digest_file(
    path: str,
    algorithm: HashAlgorithm = HashAlgorithm.SHA256,
    block_size: int = DEFAULT_BLOCK_SIZE,
    salt: bytes = b"",
) -> bytes:
    with open(path, "rb") as fin:
        return digest_stream(fin, algorithm, block_size=block_size, salt=salt)


def main() -> int:
    ap = argparse.ArgumentParser(description="Compute fs-verity file digests offline")
    ap.add_argument("files", nargs="+", metavar="FILE", help="Files to digest")
    ap.add_argument("--hash-alg", default="sha256", choices=[str(a) for a in HashAlgorithm])
    ap.add_argument("--block-size", type=int, default=DEFAULT_BLOCK_SIZE)
    ap.add_argument("--salt-hex", default="", help="Optional salt as hex")
    ap.add_argument("--compact", action="store_true", help="Print only the hex digest")

    args = ap.parse_args()

    try:
        algorithm = HashAlgorithm.from_name(args.hash_alg)
        salt = parse_salt_hex(args.salt_hex)
        MerkleDigest(algorithm, block_size=args.block_size, salt=salt)
    except ValueError as e:
        raise SystemExit(str(e))

    for path in args.files:
        digest = digest_file(path, algorithm, block_size=args.block_size, salt=salt)
        if args.compact:
            print(digest.hex())
        else:
            print(f"{format_digest(algorithm, digest)} {path}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
