import threading

import pytest
from sqlalchemy import select, update

from circulation_service.db import session_scope
from circulation_service.engine import CirculationEngine
from circulation_service.errors import ConcurrencyConflict, NotFound, Unavailable
from circulation_service.inventory import add_copy
from circulation_service.models import Copy, Loan, Title, WaitlistEntry
from circulation_service.waitlist import WaitlistManager

from conftest import copy_ids, queue


def line_up(engine, isbn, *customers):
    return [engine.enqueue(c, isbn) for c in customers]


def assert_dense(engine, isbn):
    serials = [s for _, s in queue(engine, isbn)]
    assert sorted(serials) == list(range(1, len(serials) + 1))


def corrupt_serials(session_factory, serials_by_entry):
    with session_scope(session_factory) as session:
        for entry_id, serial in serials_by_entry.items():
            session.execute(
                update(WaitlistEntry).where(WaitlistEntry.id == entry_id).values(serial=serial)
            )


def test_first_request_gets_serial_one(engine):
    result = engine.request_hold("X", "T1")
    assert result.accepted
    assert result.entry.serial == 1


def test_enqueue_joins_at_the_back(engine):
    line_up(engine, "T1", "A", "B", "C")
    assert queue(engine, "T1") == [("A", 1), ("B", 2), ("C", 3)]


def test_repeat_request_continues_after_own_turn(engine):
    line_up(engine, "T1", "A", "B")
    again = engine.enqueue("A", "T1")
    assert again.serial == 3
    assert queue(engine, "T1") == [("A", 1), ("B", 2), ("A", 3)]


def test_promote_to_front(engine):
    line_up(engine, "T1", "A", "B", "C")
    entry = engine.promote_to_front("C", "T1")
    assert entry.serial == 1
    assert queue(engine, "T1") == [("C", 1), ("A", 2), ("B", 3)]


def test_promote_keeps_relative_order_of_others(engine):
    line_up(engine, "T1", "A", "B", "C", "X")
    engine.promote_to_front("B", "T1")
    assert queue(engine, "T1") == [("B", 1), ("A", 2), ("C", 3), ("X", 4)]

    engine.promote_to_front("X", "T1")
    assert queue(engine, "T1") == [("X", 1), ("B", 2), ("A", 3), ("C", 4)]


def test_promote_front_runner_changes_nothing(engine):
    line_up(engine, "T1", "A", "B")
    engine.promote_to_front("A", "T1")
    assert queue(engine, "T1") == [("A", 1), ("B", 2)]


def test_promote_moves_earliest_turn_of_repeat_customer(engine):
    line_up(engine, "T1", "A", "B", "C", "B")
    engine.promote_to_front("B", "T1")
    assert queue(engine, "T1") == [("B", 1), ("A", 2), ("C", 3), ("B", 4)]


def test_promote_without_entry(engine):
    line_up(engine, "T1", "A")
    with pytest.raises(NotFound):
        engine.promote_to_front("B", "T1")
    with pytest.raises(NotFound):
        engine.promote_to_front("A", "NO-SUCH-ISBN")


def test_promote_does_not_touch_other_titles(engine):
    line_up(engine, "T1", "A", "B")
    line_up(engine, "T2", "A", "B")
    engine.promote_to_front("B", "T1")
    assert queue(engine, "T2") == [("A", 1), ("B", 2)]


def test_fulfill_then_repair(seeded, engine):
    a, _, _ = line_up(engine, "T1", "A", "B", "C")
    copy_id = copy_ids(seeded, "T1")[0]

    loan = engine.fulfill(a.id, copy_id)

    assert loan.customer_id == "A"
    assert queue(engine, "T1") == [("B", 1), ("C", 2)]
    with session_scope(seeded) as session:
        assert session.get(Copy, copy_id).booked is True
        assert session.get(WaitlistEntry, a.id) is None
        assert session.get(Loan, loan.id).returned_at is None


def test_cancel_compacts_waitlist(engine):
    _, b, _ = line_up(engine, "T1", "A", "B", "C")
    engine.cancel(b.id)
    assert queue(engine, "T1") == [("A", 1), ("C", 2)]


def test_cancel_unknown_entry(engine):
    with pytest.raises(NotFound):
        engine.cancel(9999)


def test_repair_fixes_gaps_and_duplicates(seeded, engine):
    a, b, c, x = line_up(engine, "T1", "A", "B", "C", "X")
    # gaps plus a duplicate serial; the tie goes to the lower entry id
    corrupt_serials(seeded, {a.id: 7, b.id: 3, c.id: 3, x.id: 10})

    entries = engine.repair_ordering("T1")

    assert [(e.customer_id, e.serial) for e in entries] == [
        ("B", 1),
        ("C", 2),
        ("A", 3),
        ("X", 4),
    ]


def test_repair_is_idempotent(seeded, engine):
    a, b, c = line_up(engine, "T1", "A", "B", "C")
    corrupt_serials(seeded, {a.id: 5, b.id: 2, c.id: 9})

    once = [(e.id, e.serial) for e in engine.repair_ordering("T1")]
    with session_scope(seeded) as session:
        version = session.execute(select(Title.queue_version).where(Title.isbn == "T1")).scalar_one()

    twice = [(e.id, e.serial) for e in engine.repair_ordering("T1")]
    assert once == twice
    with session_scope(seeded) as session:
        # nothing changed, so the waitlist version stays put
        assert session.execute(
            select(Title.queue_version).where(Title.isbn == "T1")
        ).scalar_one() == version


def test_enqueue_repairs_before_numbering(seeded, engine):
    a, b = line_up(engine, "T1", "A", "B")
    corrupt_serials(seeded, {a.id: 4, b.id: 8})
    c = engine.enqueue("C", "T1")
    assert c.serial == 3
    assert queue(engine, "T1") == [("A", 1), ("B", 2), ("C", 3)]


def test_serials_stay_dense_through_mixed_operations(seeded, engine):
    copies = iter(copy_ids(seeded, "T1"))
    entries = line_up(engine, "T1", "A", "B", "C", "X", "A")
    assert_dense(engine, "T1")

    engine.cancel(entries[2].id)
    assert_dense(engine, "T1")

    engine.promote_to_front("X", "T1")
    assert_dense(engine, "T1")

    engine.fulfill(entries[0].id, next(copies))
    assert_dense(engine, "T1")

    engine.enqueue("C", "T1")
    assert_dense(engine, "T1")
    assert queue(engine, "T1") == [("X", 1), ("B", 2), ("A", 3), ("C", 4)]


def test_list_pending_is_ordered_and_repaired(seeded, engine):
    line_up(engine, "T1", "B", "A")
    line_up(engine, "T2", "A")
    t3 = line_up(engine, "T3", "B", "C", "A")[2]
    corrupt_serials(seeded, {t3.id: 12})

    pending = engine.list_pending("A")

    assert [(e.isbn, e.serial) for e in pending] == [("T2", 1), ("T1", 2), ("T3", 3)]


def test_list_pending_reports_what_was_repaired_under_the_lock(seeded, engine, monkeypatch):
    a = line_up(engine, "T1", "B", "A")[1]
    original = engine._repair_scope

    def repair_then_disturb(scope):
        entries = original(scope)
        # a later writer scrambles the scope once the lock is released
        corrupt_serials(seeded, {a.id: 9})
        return entries

    monkeypatch.setattr(engine, "_repair_scope", repair_then_disturb)

    assert [(e.isbn, e.serial) for e in engine.list_pending("A")] == [("T1", 2)]


def test_list_pending_unknown_customer(engine):
    with pytest.raises(NotFound):
        engine.list_pending("nobody")


def test_conflicting_writer_aborts_promotion(engine, monkeypatch):
    line_up(engine, "T1", "A", "B", "C")
    original = WaitlistManager._load_entries

    def racing_load(self, session, scope):
        entries = original(self, session, scope)
        # stands in for another process changing the waitlist after our read
        session.execute(
            update(Title)
            .where(Title.isbn == scope.isbn)
            .values(queue_version=Title.queue_version + 1)
            .execution_options(synchronize_session=False)
        )
        return entries

    monkeypatch.setattr(WaitlistManager, "_load_entries", racing_load)
    with pytest.raises(ConcurrencyConflict):
        engine.promote_to_front("C", "T1")
    monkeypatch.undo()

    # nothing from the failed promotion is visible
    assert queue(engine, "T1") == [("A", 1), ("B", 2), ("C", 3)]


def test_concurrent_promotions_keep_serials_dense(engine):
    customers = ["A", "B", "C", "X"]
    line_up(engine, "T1", *customers)
    errors = []

    def promote(customer):
        try:
            engine.promote_to_front(customer, "T1")
        except Exception as e:  # collected and asserted below
            errors.append(e)

    threads = [threading.Thread(target=promote, args=(c,)) for c in customers * 3]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert_dense(engine, "T1")
    assert sorted(c for c, _ in queue(engine, "T1")) == sorted(customers)


def test_copy_scoped_waitlists(seeded):
    engine = CirculationEngine(seeded, scope_mode="copy")
    with session_scope(seeded) as session:
        add_copy(session, "T1")
    first, second = copy_ids(seeded, "T1")

    engine.enqueue("A", "T1", first)
    engine.enqueue("B", "T1", first)
    engine.enqueue("C", "T1", second)

    engine.promote_to_front("B", "T1", first)

    assert queue(engine, "T1", first) == [("B", 1), ("A", 2)]
    assert queue(engine, "T1", second) == [("C", 1)]


def test_unknown_scope_mode():
    with pytest.raises(ValueError):
        WaitlistManager("branch")


def test_copy_scoped_enqueue_checks_copy(seeded):
    engine = CirculationEngine(seeded, scope_mode="copy")
    other_title_copy = copy_ids(seeded, "T2")[0]
    with pytest.raises(NotFound):
        engine.enqueue("A", "T1", other_title_copy)


def test_copy_scoped_fulfill_serves_only_the_queued_copy(seeded):
    engine = CirculationEngine(seeded, scope_mode="copy")
    with session_scope(seeded) as session:
        add_copy(session, "T1")
    first, second = copy_ids(seeded, "T1")
    a = engine.enqueue("A", "T1", first)
    engine.enqueue("B", "T1", second)

    with pytest.raises(Unavailable):
        engine.fulfill(a.id, second)

    with session_scope(seeded) as session:
        assert session.get(Copy, second).booked is False
    assert queue(engine, "T1", first) == [("A", 1)]
    assert queue(engine, "T1", second) == [("B", 1)]

    assert engine.fulfill(a.id, first).copy_id == first


def test_unknown_keys_do_not_create_locks(engine):
    with pytest.raises(NotFound):
        engine.request_hold("A", "NO-SUCH-ISBN")
    with pytest.raises(NotFound):
        engine.enqueue("A", "NO-SUCH-ISBN")
    with pytest.raises(NotFound):
        engine.list_queue("NO-SUCH-ISBN")
    with pytest.raises(NotFound):
        engine.request_hold("nobody", "T1")

    assert "NO-SUCH-ISBN" not in engine.waitlist.locks._locks
    assert "nobody" not in engine.customer_locks._locks
