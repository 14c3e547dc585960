# Content checksums shared with the indexer
from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Union


def compute_file_checksum(content: Union[str, bytes]) -> str:
    """Checksum of file content, in the format the indexer stores.

    Only ever compared for equality.
    """
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()[:16]


def checksum_path(path: Union[str, Path]) -> str:
    """Read a file and return its checksum. Raises OSError if unreadable."""
    return compute_file_checksum(Path(path).read_bytes())
