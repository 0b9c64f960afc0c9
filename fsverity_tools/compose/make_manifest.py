#!/usr/bin/env python3
"""Create a manifest.json with the fs-verity digests of a set of files.

This is intentionally simple and CI-friendly:
- pure userspace, unprivileged (digests are computed offline)
- records file size + fs-verity digest per file, keyed by path relative to
  --base-dir
- records the Merkle tree parameters (hash algorithm, block size, salt)

The manifest is meant to be consumed on the target, where the files are
verity-enabled with the same parameters and the kernel measurement is
compared against the recorded digest.
"""

from __future__ import annotations

import argparse
import datetime as dt
import json
import os
from typing import Any, Dict, Iterable, List

from fsverity_tools.fs_verity.fsverity_digest import (
    DEFAULT_BLOCK_SIZE,
    HashAlgorithm,
    MerkleDigest,
    digest_file,
    parse_salt_hex,
)


def iter_input_files(inputs: Iterable[str]) -> List[str]:
    files: List[str] = []
    for p in inputs:
        if os.path.isdir(p):
            for root, dirs, names in os.walk(p):
                dirs.sort()
                for name in sorted(names):
                    full = os.path.join(root, name)
                    if os.path.isfile(full):
                        files.append(full)
        elif os.path.isfile(p):
            files.append(p)
        else:
            raise SystemExit(f"input not found: {p}")
    return sorted(set(files))


def file_entry(path: str, algorithm: HashAlgorithm, block_size: int, salt: bytes) -> Dict[str, Any]:
    st = os.stat(path)
    return {
        "bytes": st.st_size,
        "digest_hex": digest_file(path, algorithm, block_size=block_size, salt=salt).hex(),
    }


def build_manifest(
    inputs: Iterable[str],
    base_dir: str,
    algorithm: HashAlgorithm = HashAlgorithm.SHA256,
    block_size: int = DEFAULT_BLOCK_SIZE,
    salt: bytes = b"",
) -> Dict[str, Any]:
    # Fail on bad parameters before reading any file.
    MerkleDigest(algorithm, block_size=block_size, salt=salt)

    files: Dict[str, Any] = {}
    for path in iter_input_files(inputs):
        files[os.path.relpath(path, base_dir)] = file_entry(path, algorithm, block_size, salt)

    return {
        "manifest_version": 1,
        "created_utc": dt.datetime.now(dt.timezone.utc).isoformat(),
        "hash_alg": str(algorithm),
        "block_size": block_size,
        "salt_hex": salt.hex(),
        "files": files,
    }


def main() -> int:
    ap = argparse.ArgumentParser(description="Write a manifest of fs-verity digests")
    ap.add_argument("inputs", nargs="+", help="Input files or directories")
    ap.add_argument("--base-dir", default=".", help="Directory the recorded paths are relative to")
    ap.add_argument("--hash-alg", default="sha256", choices=[str(a) for a in HashAlgorithm])
    ap.add_argument("--block-size", type=int, default=DEFAULT_BLOCK_SIZE)
    ap.add_argument("--salt-hex", default="")
    ap.add_argument("--out", default="manifest.json")

    args = ap.parse_args()

    try:
        manifest = build_manifest(
            args.inputs,
            args.base_dir,
            algorithm=HashAlgorithm.from_name(args.hash_alg),
            block_size=args.block_size,
            salt=parse_salt_hex(args.salt_hex),
        )
    except ValueError as e:
        raise SystemExit(str(e))

    with open(args.out, "w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)
        f.write("\n")

    print(args.out)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
