"""Parse/hint cache and task acceptance rules (core domain).

The cache sits in front of the LLM proxy: a hit short-circuits the external
call, and a parse only becomes usable by later stages once it is accepted.
Writes are plain upserts, so concurrent writers to one key resolve by
last-write-wins.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable, List, Optional

from core.contracts import HintResult, ParseResult
from core.errors import NotFoundError
from core.models import HintCacheEntry, ParseRecord
from core.ports import StoragePort

LOGGER = logging.getLogger(__name__)

ACCEPT_AUTO = "auto"
ACCEPT_USER_YES = "user_yes"
ACCEPT_USER_FIX = "user_fix"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_fresh(created_at: Optional[datetime], max_age: Optional[timedelta], now: datetime) -> bool:
    if max_age is None:
        return True
    if created_at is None:
        return False
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return now - created_at <= max_age


class PipelineCache:
    """Idempotency layer over the storage port."""

    def __init__(self, storage: StoragePort, clock: Callable[[], datetime] = utcnow) -> None:
        self._storage = storage
        self._clock = clock

    # --- parses ---------------------------------------------------------------

    def find_accepted(
        self,
        fingerprint: str,
        engine: str,
        max_age: Optional[timedelta] = None,
    ) -> Optional[ParseRecord]:
        """Return the authoritative parse, or None when the stage must run.

        Drafts and parses older than ``max_age`` are both reported as misses.
        """

        record = self._storage.find_parse(fingerprint, engine)
        if record is None or not record.accepted:
            return None
        if not _is_fresh(record.updated_at or record.created_at, max_age, self._clock()):
            LOGGER.debug("Accepted parse for %s is stale", fingerprint[:12])
            return None
        return record

    def find_accepted_for_session(self, session_id: str) -> Optional[ParseRecord]:
        return self._storage.find_accepted_parse_for_session(session_id)

    def upsert_draft(
        self,
        fingerprint: str,
        engine: str,
        chat_id: int,
        session_id: str,
        result: ParseResult,
    ) -> ParseRecord:
        """Write a draft parse, replacing every field of any prior record."""

        now = self._clock()
        record = ParseRecord(
            fingerprint=fingerprint,
            engine=engine,
            chat_id=chat_id,
            session_id=session_id,
            result=result,
            accepted=False,
            accept_reason="",
            created_at=now,
            updated_at=now,
        )
        self._storage.upsert_parse(record)
        return record

    def mark_accepted(self, fingerprint: str, engine: str, reason: str) -> None:
        """Promote a draft to accepted.

        Raises NotFoundError when no draft was written for the key first.
        """

        if not self._storage.mark_accepted(fingerprint, engine, reason):
            raise NotFoundError(f"No parse drafted for {fingerprint[:12]}/{engine}")

    def accept_with_overwrite(self, record: ParseRecord, result: ParseResult, reason: str) -> ParseRecord:
        """Replace the parse payload and accept it in one write."""

        now = self._clock()
        accepted = replace(
            record,
            result=result,
            accepted=True,
            accept_reason=reason,
            updated_at=now,
            created_at=record.created_at or now,
        )
        self._storage.upsert_parse(accepted)
        return accepted

    # --- hints ----------------------------------------------------------------

    def find_hint(
        self,
        fingerprint: str,
        engine: str,
        level: int,
        max_age: Optional[timedelta] = None,
    ) -> Optional[HintCacheEntry]:
        """Return a cached hint; entries older than ``max_age`` count as misses.

        Stale rows are left in place, only ignored.
        """

        entry = self._storage.find_hint(fingerprint, engine, level)
        if entry is None:
            return None
        if not _is_fresh(entry.created_at, max_age, self._clock()):
            LOGGER.debug("Hint L%d for %s is stale", level, fingerprint[:12])
            return None
        return entry

    def upsert_hint(self, fingerprint: str, engine: str, level: int, result: HintResult) -> HintCacheEntry:
        entry = HintCacheEntry(
            fingerprint=fingerprint,
            engine=engine,
            level=level,
            result=result,
            created_at=self._clock(),
        )
        self._storage.upsert_hint(entry)
        return entry

    def previous_hints(
        self,
        fingerprint: str,
        engine: str,
        level: int,
        max_age: Optional[timedelta] = None,
    ) -> List[str]:
        """Collect hint texts of levels below ``level``, lowest level first.

        Levels are walked downward from ``level - 1``; a missing or stale level
        is skipped.
        """

        collected: List[tuple[int, list[str]]] = []
        for lower in range(level - 1, 0, -1):
            entry = self.find_hint(fingerprint, engine, lower, max_age)
            if entry is None:
                continue
            texts = entry.result.texts_for_level(lower)
            if texts:
                collected.append((lower, texts))
        return [text for _, texts in sorted(collected) for text in texts]
