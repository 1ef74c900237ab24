"""Content fingerprinting for the parse and hint caches (core domain)."""

from __future__ import annotations

import hashlib
from typing import Iterable

from core.events import PageImage


def compute_fingerprint(pages: Iterable[PageImage]) -> str:
    """Return a stable sha256 fingerprint over every page of a submission.

    Page order matters: an album re-sent in a different order is a different
    submission as far as the caches are concerned.
    """

    digest = hashlib.sha256()
    count = 0
    for page in pages:
        digest.update(len(page.data).to_bytes(8, "big"))
        digest.update(page.data)
        count += 1
    if count == 0:
        raise ValueError("Cannot fingerprint an empty submission")
    return digest.hexdigest()
