"""
Catalog / membership upserts used by the staff endpoints and the demo
seeder. The circulation engine only reads these tables.
"""
from sqlalchemy import func, select

from .errors import NotFound
from .models import Copy, Customer, SubscriptionPlan, Title


def upsert_title(session, isbn, title, authors=None, tags=None, min_age=None, max_age=None):
    existing = session.execute(
        select(Title).where(Title.isbn == isbn).with_for_update()
    ).scalar_one_or_none()

    if existing:
        existing.title = title
        existing.authors = authors
        existing.tags = tags
        existing.min_age = min_age
        existing.max_age = max_age
        return existing, False

    t = Title(
        isbn=isbn,
        title=title,
        authors=authors,
        tags=tags,
        min_age=min_age,
        max_age=max_age,
        queue_version=0,
    )
    session.add(t)
    session.flush()
    return t, True


def add_copy(session, isbn, location=None, ask_price=None):
    title = session.execute(select(Title).where(Title.isbn == isbn)).scalar_one_or_none()
    if title is None:
        raise NotFound(f"Title {isbn} not found")

    last = session.execute(
        select(func.max(Copy.copy_number)).where(Copy.isbn == isbn)
    ).scalar_one()
    copy = Copy(
        isbn=isbn,
        copy_number=(last or 0) + 1,
        location=location,
        booked=False,
        ask_price=ask_price,
    )
    session.add(copy)
    session.flush()
    return copy


def upsert_plan(session, name, book_quota):
    plan = session.execute(
        select(SubscriptionPlan).where(SubscriptionPlan.name == name)
    ).scalar_one_or_none()
    if plan:
        plan.book_quota = book_quota
        return plan, False

    plan = SubscriptionPlan(name=name, book_quota=book_quota)
    session.add(plan)
    session.flush()
    return plan, True


def upsert_customer(session, customer_id, name, plan_name, email=None):
    customer = session.execute(
        select(Customer).where(Customer.customer_id == customer_id)
    ).scalar_one_or_none()
    if customer:
        customer.name = name
        customer.plan_name = plan_name
        if email:
            customer.email = email
        return customer, False

    customer = Customer(customer_id=customer_id, name=name, email=email, plan_name=plan_name)
    session.add(customer)
    session.flush()
    return customer, True
