# circulation_service/models.py
from datetime import datetime

from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    Numeric,
    Float,
    Text,
    Index,
)

Base = declarative_base()


class Title(Base):
    """
    Catalog work. queue_version is bumped by every change to the
    title's waitlist and used as a compare-and-swap guard.
    """
    __tablename__ = "title"

    id = Column(Integer, primary_key=True, autoincrement=True)
    isbn = Column(String(20), unique=True, nullable=False)
    title = Column(String(255), nullable=False)
    authors = Column(String(255))
    tags = Column(String(255))
    min_age = Column(Float)
    max_age = Column(Float)
    queue_version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Copy(Base):
    __tablename__ = "copy"

    id = Column(Integer, primary_key=True, autoincrement=True)
    isbn = Column(String(20), nullable=False, index=True)
    copy_number = Column(Integer, nullable=False, default=1)
    location = Column(String(100))
    booked = Column(Boolean, nullable=False, default=False)
    ask_price = Column(Numeric(10, 2))  # null = not for sale


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plan"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False)
    book_quota = Column(Integer, nullable=False)


class Customer(Base):
    __tablename__ = "customer"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(String(100), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    # plain name, not a FK: a plan deleted underneath a customer is
    # reported as a configuration problem
    plan_name = Column(String(100), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class WaitlistEntry(Base):
    __tablename__ = "waitlist_entry"
    __table_args__ = (Index("ix_waitlist_scope", "isbn", "copy_id", "serial"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    isbn = Column(String(20), nullable=False)
    customer_id = Column(String(100), nullable=False, index=True)
    copy_id = Column(Integer)
    serial = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "entry_id": self.id,
            "isbn": self.isbn,
            "customer_id": self.customer_id,
            "copy_id": self.copy_id,
            "serial": self.serial,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Loan(Base):
    """
    Circulation history: one row per copy handed out.
    """
    __tablename__ = "loan"

    id = Column(Integer, primary_key=True, autoincrement=True)
    isbn = Column(String(20), nullable=False)
    copy_id = Column(Integer, nullable=False)
    customer_id = Column(String(100), nullable=False)
    issued_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    due_at = Column(DateTime, nullable=False)
    returned_at = Column(DateTime)

    def to_dict(self):
        return {
            "loan_id": self.id,
            "isbn": self.isbn,
            "copy_id": self.copy_id,
            "customer_id": self.customer_id,
            "issued_at": self.issued_at.isoformat(),
            "due_at": self.due_at.isoformat(),
            "returned_at": self.returned_at.isoformat()
            if self.returned_at
            else None,
        }


class PendingNotification(Base):
    """
    Outgoing hold events that couldn't reach the notifier.
    """
    __tablename__ = "pending_notification"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event = Column(String(50), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    payload = Column(Text)  # JSON blob
