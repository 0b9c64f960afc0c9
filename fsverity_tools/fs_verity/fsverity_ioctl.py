#!/usr/bin/env python3
"""Enable and measure fs-verity on real files.

Thin wrappers around the two fs-verity ioctls:

  FS_IOC_ENABLE_VERITY   build the Merkle tree in the kernel and seal the file
  FS_IOC_MEASURE_VERITY  read back the digest the kernel computed

Enabling needs a filesystem with fs-verity support (ext4/f2fs/btrfs with the
verity feature) and a file descriptor opened read-only with no writers.
Errors from the kernel are raised as OSError unchanged (EEXIST: already
enabled, EOPNOTSUPP/ENOTTY: not supported, ETXTBSY: open for writing,
ENODATA: verity not enabled, EOVERFLOW: digest buffer too small).

The `verify` mode compares the kernel's measurement with the digest computed
offline by fsverity_digest.py for the same parameters.

Examples:

  fsverity-ioctl enable --hash-alg sha256 --block-size 4096 rootfs.img
  fsverity-ioctl measure rootfs.img
  fsverity-ioctl verify rootfs.img

References
----------
- include/uapi/linux/fsverity.h
"""

from __future__ import annotations

import argparse
import ctypes
import fcntl
import os
import struct
from typing import Tuple

from fsverity_tools.fs_verity.fsverity_digest import (
    DEFAULT_BLOCK_SIZE,
    MAX_SALT_SIZE,
    HashAlgorithm,
    digest_stream,
    format_digest,
    parse_salt_hex,
)

# _IOW('f', 133, struct fsverity_enable_arg) / _IOWR('f', 134, struct fsverity_digest)
FS_IOC_ENABLE_VERITY = 0x40806685
FS_IOC_MEASURE_VERITY = 0xC0046686

FS_VERITY_MAX_DIGEST_SIZE = 64

# struct fsverity_enable_arg (host byte order):
# version, hash_algorithm, block_size, salt_size (u32), salt_ptr (u64),
# sig_size, __reserved1 (u32), sig_ptr (u64), __reserved2[11] (u64)
ENABLE_ARG_FORMAT = "=IIIIQIIQ88x"
ENABLE_ARG_SIZE = struct.calcsize(ENABLE_ARG_FORMAT)  # 128

# struct fsverity_digest: digest_algorithm, digest_size (u16), digest[]
MEASURE_HEADER_FORMAT = "=HH"
MEASURE_HEADER_SIZE = struct.calcsize(MEASURE_HEADER_FORMAT)


def _fileno(fd) -> int:
    return fd if isinstance(fd, int) else fd.fileno()


def pack_enable_arg(algorithm: HashAlgorithm, block_size: int, salt_ptr: int, salt_size: int) -> bytes:
    return struct.pack(
        ENABLE_ARG_FORMAT,
        1,  # version
        int(algorithm),
        block_size,
        salt_size,
        salt_ptr,
        0,  # sig_size
        0,
        0,  # sig_ptr
    )


def unpack_measurement(buf) -> Tuple[HashAlgorithm, bytes]:
    alg_id, size = struct.unpack_from(MEASURE_HEADER_FORMAT, buf)
    if MEASURE_HEADER_SIZE + size > len(buf):
        raise ValueError(f"digest_size {size} exceeds buffer")
    try:
        algorithm = HashAlgorithm(alg_id)
    except ValueError:
        raise ValueError(f"Unknown fs-verity hash algorithm id: {alg_id}") from None
    return algorithm, bytes(buf[MEASURE_HEADER_SIZE:MEASURE_HEADER_SIZE + size])


def enable_verity(
    fd,
    algorithm: HashAlgorithm = HashAlgorithm.SHA256,
    block_size: int = DEFAULT_BLOCK_SIZE,
    salt: bytes = b"",
) -> None:
    if len(salt) > MAX_SALT_SIZE:
        raise ValueError(f"salt must be <= {MAX_SALT_SIZE} bytes (got {len(salt)})")

    # The kernel copies the salt from salt_ptr; keep the buffer alive across the call.
    salt_buf = ctypes.create_string_buffer(bytes(salt), len(salt)) if salt else None
    salt_ptr = ctypes.addressof(salt_buf) if salt_buf is not None else 0

    arg = pack_enable_arg(HashAlgorithm(algorithm), block_size, salt_ptr, len(salt))
    fcntl.ioctl(_fileno(fd), FS_IOC_ENABLE_VERITY, arg)


def measure_verity(fd) -> Tuple[HashAlgorithm, bytes]:
    buf = bytearray(MEASURE_HEADER_SIZE + FS_VERITY_MAX_DIGEST_SIZE)
    struct.pack_into(MEASURE_HEADER_FORMAT, buf, 0, 0, FS_VERITY_MAX_DIGEST_SIZE)
    fcntl.ioctl(_fileno(fd), FS_IOC_MEASURE_VERITY, buf, True)
    return unpack_measurement(buf)


def verify_file(path: str, block_size: int = DEFAULT_BLOCK_SIZE, salt: bytes = b"") -> Tuple[HashAlgorithm, bytes, bytes]:
    """Return (algorithm, measured, computed) for a verity-enabled file."""
    with open(path, "rb") as f:
        algorithm, measured = measure_verity(f)
        computed = digest_stream(f, algorithm, block_size=block_size, salt=salt)
    return algorithm, measured, computed


def main() -> int:
    ap = argparse.ArgumentParser(description="Enable/measure fs-verity on a file")
    ap.add_argument("mode", choices=["enable", "measure", "verify"])
    ap.add_argument("path", metavar="FILE")
    ap.add_argument("--hash-alg", default="sha256", choices=[str(a) for a in HashAlgorithm])
    ap.add_argument("--block-size", type=int, default=DEFAULT_BLOCK_SIZE)
    ap.add_argument("--salt-hex", default="", help="Optional salt as hex")

    args = ap.parse_args()

    try:
        algorithm = HashAlgorithm.from_name(args.hash_alg)
        salt = parse_salt_hex(args.salt_hex)
    except ValueError as e:
        raise SystemExit(str(e))

    if not os.path.isfile(args.path):
        raise SystemExit(f"input not found: {args.path}")

    if args.mode == "enable":
        with open(args.path, "rb") as f:
            enable_verity(f, algorithm, block_size=args.block_size, salt=salt)
        print("OK")
    elif args.mode == "measure":
        with open(args.path, "rb") as f:
            measured_alg, digest = measure_verity(f)
        print(f"{format_digest(measured_alg, digest)} {args.path}")
    else:
        measured_alg, measured, computed = verify_file(args.path, block_size=args.block_size, salt=salt)
        print(f"measured={format_digest(measured_alg, measured)}")
        print(f"computed={format_digest(measured_alg, computed)}")
        if measured != computed:
            raise SystemExit(f"digest mismatch for {args.path}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
