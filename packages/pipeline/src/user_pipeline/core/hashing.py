import hashlib
from typing import Mapping


def sha256_bytes(b: bytes) -> str:
    h = hashlib.sha256()
    h.update(b)
    return h.hexdigest()


def sha256_text(s: str) -> str:
    return sha256_bytes(s.encode("utf-8"))


def content_hash(files: Mapping[str, bytes]) -> str:
    """
    Digest of a multi-file payload.

    Hashes the sorted "<sha256>  <name>" listing, so the result depends only on
    file names and contents, never on insertion order.
    """
    listing = "".join(
        f"{sha256_bytes(files[name])}  {name}\n" for name in sorted(files.keys())
    )
    return sha256_text(listing)
