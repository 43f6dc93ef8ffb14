import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm.attributes import set_committed_value

from .errors import ConcurrencyConflict, NotFound
from .models import Title, WaitlistEntry

logger = logging.getLogger(__name__)

SCOPE_MODES = ("title", "copy")


class ScopeLocks:
    """
    Registry of in-process locks, one per key (a title isbn or a customer
    id). Everything that reads or rewrites serials of a title's waitlist
    runs while holding that title's lock. Keys are never evicted, so
    callers only ask for keys that exist in the store.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    def get(self, key):
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, key):
        lock = self.get(key)
        with lock:
            yield


@dataclass(frozen=True)
class Scope:
    """The set of entries whose serials must form 1..N."""

    isbn: str
    copy_id: Optional[int] = None
    per_copy: bool = False

    def criteria(self):
        crit = [WaitlistEntry.isbn == self.isbn]
        if self.per_copy:
            if self.copy_id is None:
                crit.append(WaitlistEntry.copy_id.is_(None))
            else:
                crit.append(WaitlistEntry.copy_id == self.copy_id)
        return crit


class WaitlistManager:
    """
    Ordered per-scope waitlists. Callers hold the title lock (ScopeLocks)
    and pass a session whose transaction wraps the whole operation; the
    title's queue_version is checked and bumped before commit so a writer
    that slipped past the lock (another process) is detected.
    """

    def __init__(self, scope_mode="title", locks=None):
        if scope_mode not in SCOPE_MODES:
            raise ValueError(f"scope_mode must be one of {SCOPE_MODES}, got {scope_mode!r}")
        self.scope_mode = scope_mode
        self.locks = locks or ScopeLocks()

    # ----------------- scopes -----------------

    def scope(self, isbn, copy_id=None):
        if self.scope_mode == "copy":
            return Scope(isbn, copy_id, per_copy=True)
        return Scope(isbn)

    def scope_of(self, entry):
        return self.scope(entry.isbn, entry.copy_id)

    def lock_title(self, session, isbn):
        title = session.execute(
            select(Title).where(Title.isbn == isbn).with_for_update()
        ).scalar_one_or_none()
        if title is None:
            raise NotFound(f"Title {isbn} not found")
        return title

    def bump_version(self, session, title, expected):
        result = session.execute(
            update(Title)
            .where(Title.id == title.id, Title.queue_version == expected)
            .values(queue_version=expected + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("Waitlist for %s changed concurrently (expected v%s)", title.isbn, expected)
            raise ConcurrencyConflict(
                f"Waitlist for {title.isbn} was modified concurrently; retry"
            )
        set_committed_value(title, "queue_version", expected + 1)

    # ----------------- reads -----------------

    def _load_entries(self, session, scope):
        q = (
            select(WaitlistEntry)
            .where(*scope.criteria())
            .order_by(WaitlistEntry.serial, WaitlistEntry.id)
        )
        return list(session.execute(q).scalars().all())

    def get_entry(self, session, entry_id):
        entry = session.get(WaitlistEntry, entry_id)
        if entry is None:
            raise NotFound(f"Waitlist entry {entry_id} not found")
        return entry

    def is_requested(self, session, isbn):
        q = select(WaitlistEntry.id).where(WaitlistEntry.isbn == isbn).limit(1)
        return session.execute(q).first() is not None

    def requested_isbns(self, session, isbns=None):
        q = select(WaitlistEntry.isbn).distinct()
        if isbns is not None:
            q = q.where(WaitlistEntry.isbn.in_(set(isbns)))
        return set(session.execute(q).scalars().all())

    def scopes_for_customer(self, session, customer_id):
        rows = session.execute(
            select(WaitlistEntry.isbn, WaitlistEntry.copy_id)
            .where(WaitlistEntry.customer_id == customer_id)
            .distinct()
        ).all()
        return sorted({self.scope(isbn, copy_id) for isbn, copy_id in rows},
                      key=lambda s: (s.isbn, s.copy_id or 0))

    # ----------------- mutations -----------------

    def _renumber(self, session, ordered):
        changed = 0
        for serial, entry in enumerate(ordered, start=1):
            if entry.serial != serial:
                entry.serial = serial
                changed += 1
        if changed:
            session.flush()
        return changed

    def repair(self, session, scope):
        """
        Sort by stored serial (ties by entry id) and reassign 1..N.
        Returns the entries in their repaired order and how many serials
        had to change.
        """
        entries = self._load_entries(session, scope)
        changed = self._renumber(session, entries)
        if changed:
            logger.info("Repaired %s serial(s) in waitlist %s", changed, scope)
        return entries, changed

    def enqueue(self, session, scope, customer_id):
        entries, _ = self.repair(session, scope)
        own = [e.serial for e in entries if e.customer_id == customer_id]
        # a returning customer continues after their own last turn, but
        # never lands inside the line: the back is always len + 1
        serial = max(own) + 1 if own else len(entries) + 1
        serial = max(serial, len(entries) + 1)

        entry = WaitlistEntry(
            isbn=scope.isbn,
            customer_id=customer_id,
            copy_id=scope.copy_id,
            serial=serial,
        )
        session.add(entry)
        session.flush()
        logger.info("Queued %s for %s at serial %s", customer_id, scope.isbn, serial)
        return entry

    def promote(self, session, scope, customer_id):
        """
        Move the customer's earliest entry to serial 1 and shift everyone
        else down, keeping their relative order.
        """
        entries = self._load_entries(session, scope)
        mine = [e for e in entries if e.customer_id == customer_id]
        if not mine:
            raise NotFound(f"Customer {customer_id} has no entry in waitlist for {scope.isbn}")

        target = mine[0]
        ordered = [target] + [e for e in entries if e is not target]
        self._renumber(session, ordered)
        logger.info("Promoted %s to front of waitlist %s", customer_id, scope)
        return target

    def remove(self, session, entry):
        """Drop the entry; remaining serials are compacted by repair()."""
        session.delete(entry)
        session.flush()
