import os
import logging
from functools import wraps

from flask import Blueprint, Flask, abort, current_app, jsonify, request
from flask_cors import CORS

from .config import Config
from .db import make_engine, make_session_factory, session_scope
from .engine import DEFAULT_LOAN_DAYS, CirculationEngine
from .errors import CirculationError
from .inventory import add_copy, upsert_customer, upsert_plan, upsert_title
from .notifications import HoldNotifier

# ---------------------------------------------------------
# Logging (so you can see hold / issue activity in the terminal)
# ---------------------------------------------------------
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

api = Blueprint("api", __name__, url_prefix="/api")


# ---------------------------------------------------------
# Helpers
# ---------------------------------------------------------

def circulation():
    return current_app.extensions["circulation"]


def sessions():
    return current_app.extensions["circulation_sessions"]


def require_api_key(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get("SERVICE_API_KEY")
        sent = request.headers.get("X-API-Key")
        if not expected or sent != expected:
            logger.warning("Invalid API key on %s", request.path)
            abort(401, description="Invalid or missing service API key")
        return func(*args, **kwargs)

    return wrapper


def require_fields(data, *names):
    missing = [n for n in names if data.get(n) in (None, "")]
    if missing:
        abort(400, description=f"{', '.join(missing)} required")


def as_int(value, name):
    try:
        return int(value)
    except (TypeError, ValueError):
        abort(400, description=f"{name} must be an integer")


def title_to_dict(t, availability=None):
    out = {
        "isbn": t.isbn,
        "title": t.title,
        "authors": t.authors,
        "tags": t.tags,
        "min_age": t.min_age,
        "max_age": t.max_age,
    }
    if availability is not None:
        out.update(availability.to_dict())
    return out


# ---------------------------------------------------------
# Health
# ---------------------------------------------------------

@api.get("/health")
def health_check():
    return jsonify({"status": "ok", "service": "circulation_service"}), 200


# ---------------------------------------------------------
# Catalog / availability
# ---------------------------------------------------------

@api.get("/availability")
def get_availability():
    """
    ?isbn=...&isbn=...  -> {isbn: {available, min_price}}
    """
    isbns = request.args.getlist("isbn")
    result = circulation().get_availability(isbns)
    return jsonify({isbn: a.to_dict() for isbn, a in result.items()})


@api.get("/titles")
def browse_titles():
    """
    Requestable titles, filtered by ?title= ?author= ?tag= ?age=
    """
    age = request.args.get("age")
    try:
        age = float(age) if age else None
    except ValueError:
        abort(400, description="age must be a number")

    rows = circulation().browse(
        title=request.args.get("title"),
        author=request.args.get("author"),
        tag=request.args.get("tag"),
        age=age,
    )
    return jsonify([title_to_dict(t, a) for t, a in rows])


# ---------------------------------------------------------
# Holds (customer surface)
# ---------------------------------------------------------

@api.post("/holds")
def request_hold():
    data = request.get_json(force=True)
    require_fields(data, "customer_id", "isbn")

    result = circulation().request_hold(data["customer_id"], data["isbn"])
    if not result.accepted:
        return jsonify({"error": result.message, "code": result.reason}), 409
    return jsonify(result.entry.to_dict()), 201


@api.get("/customers/<customer_id>/holds")
def list_pending(customer_id):
    entries = circulation().list_pending(customer_id)
    return jsonify([e.to_dict() for e in entries])


@api.get("/customers/<customer_id>/quota")
def customer_quota(customer_id):
    engine = circulation()
    return jsonify(
        {
            "customer_id": customer_id,
            "limit": engine.quota_limit(customer_id),
            "remaining": engine.remaining_quota(customer_id),
        }
    )


@api.get("/customers/<customer_id>/loans")
def customer_loans(customer_id):
    """
    Circulation history of one customer, newest first. ?open_only=true
    lists only copies not yet returned.
    """
    open_only = request.args.get("open_only", "").lower() in ("1", "true", "yes")
    loans = circulation().loan_history(customer_id, open_only=open_only)
    return jsonify([loan.to_dict() for loan in loans])


@api.post("/holds/promote")
def promote_hold():
    """
    Move the customer's request to the front of the title's waitlist.
    """
    data = request.get_json(force=True)
    require_fields(data, "customer_id", "isbn")

    entry = circulation().promote_to_front(
        data["customer_id"], data["isbn"], data.get("copy_id")
    )
    return jsonify(entry.to_dict()), 200


@api.delete("/holds/<int:entry_id>")
def cancel_hold(entry_id):
    circulation().cancel(entry_id)
    return jsonify({"message": "Cancelled"}), 200


# ---------------------------------------------------------
# Staff: queues, issue / return
# ---------------------------------------------------------

@api.get("/titles/<isbn>/queue")
@require_api_key
def title_queue(isbn):
    copy_id = request.args.get("copy_id", type=int)
    entries = circulation().list_queue(isbn, copy_id)
    return jsonify([e.to_dict() for e in entries])


@api.post("/titles/<isbn>/queue")
@require_api_key
def enqueue(isbn):
    """
    Staff / recommendation path: queue a customer without the
    single-claimant check.
    """
    data = request.get_json(force=True)
    require_fields(data, "customer_id")
    entry = circulation().enqueue(data["customer_id"], isbn, data.get("copy_id"))
    return jsonify(entry.to_dict()), 201


@api.post("/holds/<int:entry_id>/fulfill")
@require_api_key
def fulfill_hold(entry_id):
    """
    JSON: {"copy_id": 3, "days": 14}; days is optional.
    """
    data = request.get_json(force=True)
    require_fields(data, "copy_id")
    copy_id = as_int(data["copy_id"], "copy_id")
    days = as_int(data.get("days", DEFAULT_LOAN_DAYS), "days")
    if days < 1:
        abort(400, description="days must be at least 1")

    loan = circulation().fulfill(entry_id, copy_id, days=days)
    return jsonify(loan.to_dict()), 201


@api.post("/loans/<int:loan_id>/return")
@require_api_key
def return_loan(loan_id):
    loan = circulation().return_copy(loan_id)
    return jsonify(loan.to_dict()), 200


@api.get("/loans")
@require_api_key
def loans_in_circulation():
    return jsonify([loan.to_dict() for loan in circulation().in_circulation()])


# ---------------------------------------------------------
# Staff: inventory and membership
# ---------------------------------------------------------

@api.post("/titles")
@require_api_key
def create_or_update_title():
    """
    Librarian endpoint – upsert title by ISBN.
    """
    data = request.get_json(force=True)
    require_fields(data, "isbn", "title")

    with session_scope(sessions()) as session:
        t, created = upsert_title(
            session,
            data["isbn"],
            data["title"],
            authors=data.get("authors"),
            tags=data.get("tags"),
            min_age=data.get("min_age"),
            max_age=data.get("max_age"),
        )
        logger.info("%s title %s", "Created" if created else "Updated", t.isbn)
    return jsonify({"isbn": t.isbn}), 201 if created else 200


@api.post("/titles/<isbn>/copies")
@require_api_key
def create_copy(isbn):
    data = request.get_json(silent=True) or {}
    with session_scope(sessions()) as session:
        copy = add_copy(
            session, isbn, location=data.get("location"), ask_price=data.get("ask_price")
        )
    return jsonify({"copy_id": copy.id, "isbn": isbn, "copy_number": copy.copy_number}), 201


@api.post("/plans")
@require_api_key
def create_or_update_plan():
    data = request.get_json(force=True)
    require_fields(data, "name", "book_quota")
    with session_scope(sessions()) as session:
        plan, created = upsert_plan(session, data["name"], as_int(data["book_quota"], "book_quota"))
    return jsonify({"name": plan.name, "book_quota": plan.book_quota}), 201 if created else 200


@api.post("/customers")
@require_api_key
def create_or_update_customer():
    data = request.get_json(force=True)
    require_fields(data, "customer_id", "name", "plan_name")
    with session_scope(sessions()) as session:
        customer, created = upsert_customer(
            session,
            data["customer_id"],
            data["name"],
            data["plan_name"],
            email=data.get("email"),
        )
    return jsonify({"customer_id": customer.customer_id}), 201 if created else 200


# ---------------------------------------------------------
# Notification outbox
# ---------------------------------------------------------

@api.post("/notifications/retry")
@require_api_key
def retry_notifications():
    delivered = current_app.extensions["hold_notifier"].retry_pending()
    return jsonify({"message": "Retry triggered", "delivered": delivered}), 200


# ---------------------------------------------------------
# Errors
# ---------------------------------------------------------

@api.errorhandler(CirculationError)
def circulation_error(e):
    if e.status >= 500:
        logger.error("%s: %s", e.code, e.message)
    return jsonify({"error": e.message, "code": e.code}), e.status


# ---------------------------------------------------------
# App factory
# ---------------------------------------------------------

def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)
    CORS(app)

    engine = make_engine(
        app.config["SQLALCHEMY_DATABASE_URI"], echo=app.config.get("SQLALCHEMY_ECHO", False)
    )
    SessionLocal = make_session_factory(engine)

    notifier = HoldNotifier(
        SessionLocal,
        url=app.config.get("NOTIFIER_URL"),
        timeout=app.config.get("NOTIFIER_TIMEOUT", 3),
    )
    app.extensions["circulation_sessions"] = SessionLocal
    app.extensions["hold_notifier"] = notifier
    app.extensions["circulation"] = CirculationEngine(
        SessionLocal,
        scope_mode=app.config.get("WAITLIST_SCOPE", "title"),
        notifier=notifier,
    )

    app.register_blueprint(api)
    return app


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5000"))
    create_app().run(host="0.0.0.0", port=port, debug=True)
