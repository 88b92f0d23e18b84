"""
Message Deduplicator

Keeps a contact from receiving byte-identical message content twice within
a rolling window. This is best-effort: when every template for a
(style, intent) pair has been used inside the window, a repeat is sent
rather than nothing.

State lives in an explicitly constructed store passed to the deduplicator:
- InMemoryDedupStore: process-local, lock-protected, time-stamped.
- DatabaseDedupStore: backed by sent_message_log, survives restarts.

Both treat "within window" as a time-bounded lookup, so old entries stop
counting without a manual wipe. clear_old_history() prunes them.
"""

import logging
import random
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Union

from sqlalchemy.orm import Session

from rundown.core.config import settings
from rundown.models import SentMessageLog, utc_now
from rundown.services.message_bank import MessageIntent, MessageStyle, get_templates

logger = logging.getLogger(__name__)


def hash_message(text: str) -> str:
    """
    Short, deterministic, order-sensitive content hash (base-36).

    h = h * 31 + code_unit over UTF-16 code units, wrapped to signed 32-bit.
    Not cryptographic; distinct inputs differ with high probability.
    """
    h = 0
    data = text.encode("utf-16-le")
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = ((h << 5) - h + unit) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 0x100000000
    return _to_base36(abs(h))


def _to_base36(n: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(digits[r])
    return "".join(reversed(out))


def dedup_key(contact_id, window_days: int) -> str:
    return f"{contact_id}_{window_days}d"


class InMemoryDedupStore:
    """Process-local store: {"{contact}_{N}d": {hash: sent_at}}."""

    def __init__(self):
        self._sent: Dict[str, Dict[str, datetime]] = {}
        self._lock = threading.Lock()

    def check_and_record(self, contact_id, content_hash: str, window_days: int, now: datetime) -> bool:
        key = dedup_key(contact_id, window_days)
        cutoff = now - timedelta(days=window_days)
        with self._lock:
            hashes = self._sent.setdefault(key, {})
            sent_at = hashes.get(content_hash)
            if sent_at is not None and sent_at > cutoff:
                return False
            hashes[content_hash] = now
            return True

    def was_sent(self, contact_id, content_hash: str, window_days: int, now: datetime) -> bool:
        cutoff = now - timedelta(days=window_days)
        with self._lock:
            sent_at = self._sent.get(dedup_key(contact_id, window_days), {}).get(content_hash)
            return sent_at is not None and sent_at > cutoff

    def record(self, contact_id, content_hash: str, window_days: int, now: datetime) -> None:
        with self._lock:
            self._sent.setdefault(dedup_key(contact_id, window_days), {})[content_hash] = now

    def prune(self, older_than: Optional[datetime]) -> int:
        with self._lock:
            if older_than is None:
                removed = sum(len(h) for h in self._sent.values())
                self._sent.clear()
                return removed

            removed = 0
            for key in list(self._sent):
                hashes = self._sent[key]
                for content_hash in [h for h, ts in hashes.items() if ts <= older_than]:
                    del hashes[content_hash]
                    removed += 1
                if not hashes:
                    del self._sent[key]
            return removed

    def __len__(self) -> int:
        with self._lock:
            return sum(len(h) for h in self._sent.values())


class DatabaseDedupStore:
    """
    Store backed by sent_message_log.

    Rows are added to the caller's session; they commit with the delivery
    they describe.
    """

    def __init__(self, db: Session):
        self.db = db

    def check_and_record(self, contact_id, content_hash: str, window_days: int, now: datetime) -> bool:
        if self.was_sent(contact_id, content_hash, window_days, now):
            return False
        self.record(contact_id, content_hash, window_days, now)
        return True

    def was_sent(self, contact_id, content_hash: str, window_days: int, now: datetime) -> bool:
        cutoff = now - timedelta(days=window_days)
        seen = (
            self.db.query(SentMessageLog.id)
            .filter(
                SentMessageLog.contact_id == str(contact_id),
                SentMessageLog.window_days == window_days,
                SentMessageLog.content_hash == content_hash,
                SentMessageLog.sent_at > cutoff,
            )
            .first()
        )
        return seen is not None

    def record(self, contact_id, content_hash: str, window_days: int, now: datetime) -> None:
        self.db.add(SentMessageLog(
            contact_id=str(contact_id),
            window_days=window_days,
            content_hash=content_hash,
            sent_at=now,
        ))
        self.db.flush()

    def prune(self, older_than: Optional[datetime]) -> int:
        q = self.db.query(SentMessageLog)
        if older_than is not None:
            q = q.filter(SentMessageLog.sent_at <= older_than)
        removed = q.delete(synchronize_session=False)
        self.db.commit()
        return removed


class MessageDeduplicator:
    def __init__(
        self,
        store=None,
        *,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
        window_days: Optional[int] = None,
    ):
        self.store = store if store is not None else InMemoryDedupStore()
        self.rng = rng or random.Random()
        self.clock = clock or utc_now
        self.window_days = window_days or settings.DEDUP_WINDOW_DAYS

    hash_message = staticmethod(hash_message)

    def can_send(self, contact_id, content_hash: str, window_days: Optional[int] = None) -> bool:
        """
        True if `content_hash` was not sent to `contact_id` within the window.

        A True answer also records the hash as sent.
        """
        window = window_days or self.window_days
        return self.store.check_and_record(contact_id, content_hash, window, self.clock())

    def get_unique_message(
        self,
        contact_id,
        style: Union[MessageStyle, str],
        intent: Union[MessageIntent, str],
        max_attempts: Optional[int] = None,
        window_days: Optional[int] = None,
    ) -> str:
        """
        A template for (style, intent) not yet sent to this contact.

        Samples at random up to `max_attempts` times; after that a random
        template is returned anyway, so a send is never dropped for lack of
        fresh content.
        """
        templates = get_templates(style, intent)
        attempts = max_attempts or settings.DEDUP_MAX_ATTEMPTS

        for _ in range(attempts):
            template = self.rng.choice(templates)
            if self.can_send(contact_id, hash_message(template), window_days):
                return template

        logger.info(f"Dedup exhausted for contact {contact_id} ({style}/{intent}); repeating a template")
        return self.rng.choice(templates)

    def pick_message(
        self,
        contact_id,
        style: Union[MessageStyle, str],
        intent: Union[MessageIntent, str],
        max_attempts: Optional[int] = None,
        window_days: Optional[int] = None,
    ) -> str:
        """
        Like get_unique_message, but records nothing.

        Pair with mark_sent() once the message was actually delivered, so a
        failed send does not use up the template.
        """
        templates = get_templates(style, intent)
        attempts = max_attempts or settings.DEDUP_MAX_ATTEMPTS
        window = window_days or self.window_days
        now = self.clock()

        for _ in range(attempts):
            template = self.rng.choice(templates)
            if not self.store.was_sent(contact_id, hash_message(template), window, now):
                return template

        logger.info(f"Dedup exhausted for contact {contact_id} ({style}/{intent}); repeating a template")
        return self.rng.choice(templates)

    def mark_sent(self, contact_id, template: str, window_days: Optional[int] = None) -> None:
        window = window_days or self.window_days
        self.store.record(contact_id, hash_message(template), window, self.clock())

    def clear_old_history(self, older_than_days: Optional[int] = None) -> int:
        """
        Drop recorded hashes older than `older_than_days` (all of them when None).
        """
        cutoff = None
        if older_than_days is not None:
            cutoff = self.clock() - timedelta(days=older_than_days)
        removed = self.store.prune(cutoff)
        logger.info(f"Cleared {removed} dedup entries")
        return removed
