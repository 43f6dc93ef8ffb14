import logging
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update

from .admission import AdmissionGate
from .availability import resolve_availability
from .db import session_scope
from .errors import NotFound, StoreError, Unavailable
from .models import Copy, Loan, Title
from .quota import get_customer, quota_limit, remaining_quota
from .waitlist import ScopeLocks, WaitlistManager

logger = logging.getLogger(__name__)

DEFAULT_LOAN_DAYS = 14


class CirculationEngine:
    """
    Entry point for every circulation operation. Each call is one
    transaction; waitlist mutations also hold the title's scope lock for
    the whole transaction.

    Operations that can raise a customer's pending count (request_hold,
    enqueue) first take that customer's lock, then the title lock. No
    path takes them in the other order.
    """

    def __init__(self, session_factory, scope_mode="title", notifier=None):
        self.session_factory = session_factory
        self.waitlist = WaitlistManager(scope_mode)
        self.gate = AdmissionGate(self.waitlist)
        self.customer_locks = ScopeLocks()
        self.notifier = notifier

    def _require(self, isbn, customer_id=None):
        # locks are only ever created for keys that exist in the store
        with session_scope(self.session_factory) as session:
            found = session.execute(select(Title.id).where(Title.isbn == isbn)).first()
            if found is None:
                raise NotFound(f"Title {isbn} not found")
            if customer_id is not None:
                get_customer(session, customer_id)

    # ----------------- availability / catalog -----------------

    def get_availability(self, isbns):
        with session_scope(self.session_factory) as session:
            return resolve_availability(session, isbns)

    def browse(self, title=None, author=None, tag=None, age=None):
        """
        Titles a customer can ask for right now: matching the filters,
        with an unbooked copy, and not already requested by anyone.
        A title with no min_age (or max_age) has no lower (or upper)
        bound for the age filter.
        Returns (Title, TitleAvailability) pairs.
        """
        with session_scope(self.session_factory) as session:
            q = select(Title)
            if title:
                q = q.where(Title.title.ilike(f"%{title}%"))
            if author:
                q = q.where(Title.authors.ilike(f"%{author}%"))
            if tag:
                q = q.where(Title.tags.ilike(f"%{tag}%"))
            if age is not None:
                q = q.where(
                    or_(Title.min_age.is_(None), Title.min_age <= age),
                    or_(Title.max_age.is_(None), Title.max_age >= age),
                )

            titles = session.execute(q.order_by(Title.title)).scalars().all()
            isbns = [t.isbn for t in titles]
            availability = resolve_availability(session, isbns)
            requested = self.waitlist.requested_isbns(session, isbns)

            return [
                (t, availability[t.isbn])
                for t in titles
                if availability[t.isbn].available and t.isbn not in requested
            ]

    # ----------------- quota -----------------

    def quota_limit(self, customer_id):
        with session_scope(self.session_factory) as session:
            return quota_limit(session, customer_id)

    def remaining_quota(self, customer_id):
        with session_scope(self.session_factory) as session:
            return remaining_quota(session, customer_id)

    # ----------------- waitlist -----------------

    def request_hold(self, customer_id, isbn):
        self._require(isbn, customer_id)
        with self.customer_locks.hold(customer_id), self.waitlist.locks.hold(isbn):
            with session_scope(self.session_factory) as session:
                title = self.waitlist.lock_title(session, isbn)
                version = title.queue_version
                get_customer(session, customer_id, for_update=True)

                result = self.gate.request_hold(session, self.waitlist.scope(isbn), customer_id)
                if result.accepted:
                    self.waitlist.bump_version(session, title, version)

        if result.accepted and self.notifier is not None:
            try:
                self.notifier.hold_accepted(result.entry)
            except StoreError:
                logger.exception("Could not queue notification for entry %s", result.entry.id)
        return result

    def enqueue(self, customer_id, isbn, copy_id=None):
        """
        Queue without the admission checks (staff and recommendation paths).
        """
        self._require(isbn, customer_id)
        with self.customer_locks.hold(customer_id), self.waitlist.locks.hold(isbn):
            with session_scope(self.session_factory) as session:
                title = self.waitlist.lock_title(session, isbn)
                version = title.queue_version
                get_customer(session, customer_id, for_update=True)
                if copy_id is not None:
                    copy = session.get(Copy, copy_id)
                    if copy is None or copy.isbn != isbn:
                        raise NotFound(f"Copy {copy_id} of {isbn} not found")

                entry = self.waitlist.enqueue(session, self.waitlist.scope(isbn, copy_id), customer_id)
                self.waitlist.bump_version(session, title, version)
                return entry

    def _repair_scope(self, scope):
        with self.waitlist.locks.hold(scope.isbn):
            with session_scope(self.session_factory) as session:
                title = self.waitlist.lock_title(session, scope.isbn)
                version = title.queue_version
                entries, changed = self.waitlist.repair(session, scope)
                if changed:
                    self.waitlist.bump_version(session, title, version)
                return entries

    def list_pending(self, customer_id):
        """
        The customer's entries across all scopes, ordered by serial, then
        isbn. Each scope is repaired and read under its own lock.
        """
        with session_scope(self.session_factory) as session:
            get_customer(session, customer_id)
            scopes = self.waitlist.scopes_for_customer(session, customer_id)

        pending = []
        for scope in scopes:
            entries = self._repair_scope(scope)
            pending.extend(e for e in entries if e.customer_id == customer_id)
        return sorted(pending, key=lambda e: (e.serial, e.isbn, e.id))

    def list_queue(self, isbn, copy_id=None):
        self._require(isbn)
        return self._repair_scope(self.waitlist.scope(isbn, copy_id))

    def promote_to_front(self, customer_id, isbn, copy_id=None):
        self._require(isbn)
        with self.waitlist.locks.hold(isbn):
            with session_scope(self.session_factory) as session:
                title = self.waitlist.lock_title(session, isbn)
                version = title.queue_version
                entry = self.waitlist.promote(session, self.waitlist.scope(isbn, copy_id), customer_id)
                self.waitlist.bump_version(session, title, version)
                return entry

    def repair_ordering(self, isbn, copy_id=None):
        self._require(isbn)
        return self._repair_scope(self.waitlist.scope(isbn, copy_id))

    def _entry_isbn(self, entry_id):
        with session_scope(self.session_factory) as session:
            return self.waitlist.get_entry(session, entry_id).isbn

    def cancel(self, entry_id):
        isbn = self._entry_isbn(entry_id)
        with self.waitlist.locks.hold(isbn):
            with session_scope(self.session_factory) as session:
                title = self.waitlist.lock_title(session, isbn)
                version = title.queue_version
                entry = self.waitlist.get_entry(session, entry_id)
                scope = self.waitlist.scope_of(entry)

                self.waitlist.remove(session, entry)
                self.waitlist.repair(session, scope)
                self.waitlist.bump_version(session, title, version)
        logger.info("Cancelled waitlist entry %s for %s", entry_id, isbn)

    # ----------------- issue / return -----------------

    def fulfill(self, entry_id, copy_id, days=DEFAULT_LOAN_DAYS):
        """
        Hand a copy to the entry's customer: book the copy, record the
        loan (due back after `days`), drop the entry and compact the
        waitlist. In copy mode an entry queued for one copy can only be
        served with that copy.
        """
        isbn = self._entry_isbn(entry_id)
        with self.waitlist.locks.hold(isbn):
            with session_scope(self.session_factory) as session:
                title = self.waitlist.lock_title(session, isbn)
                version = title.queue_version
                entry = self.waitlist.get_entry(session, entry_id)

                copy = session.get(Copy, copy_id)
                if copy is None or copy.isbn != entry.isbn:
                    raise NotFound(f"Copy {copy_id} of {entry.isbn} not found")
                if (
                    self.waitlist.scope_mode == "copy"
                    and entry.copy_id is not None
                    and entry.copy_id != copy_id
                ):
                    raise Unavailable(
                        f"Entry {entry_id} is waiting for copy {entry.copy_id}, not copy {copy_id}"
                    )

                booked = session.execute(
                    update(Copy)
                    .where(Copy.id == copy_id, Copy.booked.is_(False))
                    .values(booked=True)
                    .execution_options(synchronize_session=False)
                )
                if booked.rowcount != 1:
                    raise Unavailable(f"Copy {copy_id} is already booked")

                now = datetime.utcnow()
                loan = Loan(
                    isbn=entry.isbn,
                    copy_id=copy_id,
                    customer_id=entry.customer_id,
                    issued_at=now,
                    due_at=now + timedelta(days=days),
                )
                session.add(loan)

                scope = self.waitlist.scope_of(entry)
                self.waitlist.remove(session, entry)
                self.waitlist.repair(session, scope)
                self.waitlist.bump_version(session, title, version)

        logger.info("Issued copy %s of %s to %s (loan %s)", copy_id, isbn, loan.customer_id, loan.id)
        return loan

    def return_copy(self, loan_id):
        with session_scope(self.session_factory) as session:
            loan = session.execute(
                select(Loan).where(Loan.id == loan_id).with_for_update()
            ).scalar_one_or_none()
            if loan is None:
                raise NotFound(f"Loan {loan_id} not found")

            if loan.returned_at is not None:
                return loan

            loan.returned_at = datetime.utcnow()
            session.execute(
                update(Copy)
                .where(Copy.id == loan.copy_id)
                .values(booked=False)
                .execution_options(synchronize_session=False)
            )

        logger.info("Returned copy %s of %s (loan %s)", loan.copy_id, loan.isbn, loan_id)
        return loan

    def in_circulation(self):
        with session_scope(self.session_factory) as session:
            q = (
                select(Loan)
                .where(Loan.returned_at.is_(None))
                .order_by(Loan.issued_at.desc(), Loan.id.desc())
            )
            return list(session.execute(q).scalars().all())

    def loan_history(self, customer_id, open_only=False):
        """A customer's loans, newest first; open_only drops returned ones."""
        with session_scope(self.session_factory) as session:
            get_customer(session, customer_id)
            q = select(Loan).where(Loan.customer_id == customer_id)
            if open_only:
                q = q.where(Loan.returned_at.is_(None))
            q = q.order_by(Loan.issued_at.desc(), Loan.id.desc())
            return list(session.execute(q).scalars().all())
