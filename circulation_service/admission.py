import logging
from dataclasses import dataclass

from .availability import resolve_availability
from .errors import AlreadyRequested, HoldRejected, QuotaExceeded, Unavailable
from .models import WaitlistEntry
from .quota import pending_count, quota_limit

logger = logging.getLogger(__name__)


@dataclass
class Accepted:
    entry: WaitlistEntry
    accepted = True


@dataclass
class Rejected:
    reason: str
    message: str = ""
    accepted = False


class AdmissionGate:
    """
    Decides whether a hold request may join a waitlist. Checks run in
    order and stop at the first failure: availability, single claimant,
    quota.
    """

    def __init__(self, waitlist):
        self.waitlist = waitlist

    def check(self, session, isbn, customer_id):
        status = resolve_availability(session, [isbn])[isbn]
        if not status.available:
            raise Unavailable(f"No copy of {isbn} is currently available")

        if self.waitlist.is_requested(session, isbn):
            raise AlreadyRequested(f"{isbn} has already been requested")

        limit = quota_limit(session, customer_id)
        if pending_count(session, customer_id) >= limit:
            raise QuotaExceeded(
                f"Customer {customer_id} already has {limit} outstanding request(s)"
            )

    def request_hold(self, session, scope, customer_id):
        try:
            self.check(session, scope.isbn, customer_id)
        except HoldRejected as e:
            logger.info("Hold rejected: customer=%s isbn=%s reason=%s", customer_id, scope.isbn, e.code)
            return Rejected(e.code, e.message)

        entry = self.waitlist.enqueue(session, scope, customer_id)
        logger.info("Hold accepted: customer=%s isbn=%s entry=%s", customer_id, scope.isbn, entry.id)
        return Accepted(entry)
