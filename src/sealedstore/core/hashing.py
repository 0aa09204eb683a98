""" Utility for content hashing (ETags of stored objects). """

import hashlib
from typing import Iterable


def etag_for_bytes(data: bytes) -> str:
    # Single-request ETag: quoted hex MD5 of the stored bytes
    return '"%s"' % hashlib.md5(data).hexdigest()


def multipart_etag(part_etags: Iterable[str]) -> str:
    # MD5 over the concatenated binary part digests, suffixed with the part count
    digests = [bytes.fromhex(e.strip('"')) for e in part_etags]
    combined = hashlib.md5(b"".join(digests)).hexdigest()
    return '"%s-%d"' % (combined, len(digests))
