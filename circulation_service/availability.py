from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select

from .models import Copy


@dataclass(frozen=True)
class TitleAvailability:
    isbn: str
    available: bool
    min_price: Optional[float] = None

    def to_dict(self):
        return {"available": self.available, "min_price": self.min_price}


def resolve_availability(session, isbns):
    """
    For each isbn: available if at least one copy is unbooked, plus the
    lowest ask price among copies that have one. Titles without copies
    come back unavailable with no price.
    """
    isbns = set(isbns)
    if not isbns:
        return {}

    rows = session.execute(
        select(Copy.isbn, Copy.booked, Copy.ask_price).where(Copy.isbn.in_(isbns))
    ).all()

    unbooked = set()
    prices = {}
    for isbn, booked, ask_price in rows:
        if not booked:
            unbooked.add(isbn)
        if ask_price is None:
            continue
        price = float(ask_price)
        if isbn not in prices or price < prices[isbn]:
            prices[isbn] = price

    return {
        isbn: TitleAvailability(isbn, isbn in unbooked, prices.get(isbn))
        for isbn in isbns
    }
