from sqlalchemy import func, select

from .errors import ConfigurationError, NotFound
from .models import Customer, SubscriptionPlan, WaitlistEntry

# extra outstanding requests allowed on top of the plan's allowance
QUOTA_GRACE = 2


def get_customer(session, customer_id, for_update=False):
    q = select(Customer).where(Customer.customer_id == customer_id)
    if for_update:
        q = q.with_for_update()
    customer = session.execute(q).scalar_one_or_none()
    if customer is None:
        raise NotFound(f"Customer {customer_id} not found")
    return customer


def quota_limit(session, customer_id):
    customer = get_customer(session, customer_id)
    plan = session.execute(
        select(SubscriptionPlan).where(SubscriptionPlan.name == customer.plan_name)
    ).scalar_one_or_none()
    if plan is None:
        raise ConfigurationError(
            f"Customer {customer_id} is on plan {customer.plan_name!r}, "
            "which does not exist"
        )
    return plan.book_quota + QUOTA_GRACE


def pending_count(session, customer_id):
    return session.execute(
        select(func.count(WaitlistEntry.id)).where(
            WaitlistEntry.customer_id == customer_id
        )
    ).scalar_one()


def remaining_quota(session, customer_id):
    """How many more requests the customer may place right now."""
    return max(0, quota_limit(session, customer_id) - pending_count(session, customer_id))
