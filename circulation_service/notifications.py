import json
import logging
from datetime import datetime

import requests
from sqlalchemy import select

from .db import session_scope
from .models import PendingNotification

logger = logging.getLogger(__name__)


class HoldNotifier:
    """
    Tells the external notifier (email / WhatsApp sender) about accepted
    holds. Undeliverable events are kept in pending_notification.
    """

    def __init__(self, session_factory, url=None, timeout=3):
        self.session_factory = session_factory
        self.url = url
        self.timeout = timeout

    def _post(self, payload):
        try:
            resp = requests.post(self.url, json=payload, timeout=self.timeout)
            if resp.status_code != 200:
                raise RuntimeError(f"Notifier returned {resp.status_code}")
        except (requests.RequestException, RuntimeError) as e:
            logger.warning("Notification %s for entry %s failed: %s",
                           payload.get("event"), payload.get("entry_id"), e)
            return False
        return True

    def hold_accepted(self, entry):
        """
        Try to send the event; if it fails, store it for retry.
        Returns True when delivered.
        """
        if not self.url:
            return False

        payload = {
            "event": "hold.accepted",
            "entry_id": entry.id,
            "isbn": entry.isbn,
            "customer_id": entry.customer_id,
            "serial": entry.serial,
            "timestamp": datetime.utcnow().isoformat(),
        }
        if self._post(payload):
            return True

        with session_scope(self.session_factory) as session:
            session.add(
                PendingNotification(event=payload["event"], payload=json.dumps(payload))
            )
        return False

    def retry_pending(self):
        """
        Retry all pending events. Returns how many were delivered.
        """
        if not self.url:
            return 0

        delivered = 0
        with session_scope(self.session_factory) as session:
            events = session.execute(select(PendingNotification)).scalars().all()
            for evt in events:
                if self._post(json.loads(evt.payload)):
                    session.delete(evt)
                    delivered += 1
        logger.info("Retried notifications: %s delivered", delivered)
        return delivered
