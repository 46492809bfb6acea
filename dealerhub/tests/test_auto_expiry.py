import logging
import threading
from datetime import timedelta

import pytest

from dealerhub.app.db.models.core_types import OrderStatus
from dealerhub.app.db.models.models_v1 import Discount, Order, Product
from dealerhub.services import notifications as events
from dealerhub.services.auto_expiry import AutoExpiryScheduler, DiscountExpirySweep
from dealerhub.services.order_calculation import OrderLineRequest
from dealerhub.tests.conftest import order_request


@pytest.fixture
def scheduler(manager, session_factory, settings, clock):
    return AutoExpiryScheduler.from_settings(manager, session_factory, settings, clock=clock)


def edited_order(db, factory, manager, admin, price, qty=2):
    """Commande PENDING puis modifiée par l'admin : EDITED_PENDING_APPROVAL."""
    user = factory.user()
    order = manager.create_order(db, order_request(user.dealer_id, (price, qty + 1)), user)
    manager.edit_order(db, order.id, [OrderLineRequest(price.id, qty)], admin, "partial stock")
    return order.id


def test_expired_edit_is_cancelled_recent_one_untouched(db_session, factory, manager, scheduler, clock, notifier):
    """
    GIVEN
    - commande A modifiée il y a 50h, commande B il y a 10h, TTL 48h

    THEN
    - A passe CANCELLED, son stock est rendu, note système ajoutée
    - B reste EDITED_PENDING_APPROVAL
    """
    admin = factory.admin()
    product, price = factory.product(stock=20)
    old_id = edited_order(db_session, factory, manager, admin, price, qty=2)
    clock.advance(hours=40)
    recent_id = edited_order(db_session, factory, manager, admin, price, qty=3)
    clock.advance(hours=10)
    assert db_session.get(Product, product.id, populate_existing=True).stock_quantity == 15

    report = scheduler.run_once()

    assert (report.found, report.succeeded, report.failed, report.skipped) == (1, 1, 0, 0)
    old = db_session.get(Order, old_id, populate_existing=True)
    recent = db_session.get(Order, recent_id, populate_existing=True)
    assert old.status == OrderStatus.cancelled
    assert "[SYSTEM]" in old.admin_notes
    assert "waited 50.0h" in old.admin_notes
    assert recent.status == OrderStatus.edited_pending_approval
    assert db_session.get(Product, product.id, populate_existing=True).stock_quantity == 17
    assert notifier.types()[-1] == events.ORDER_AUTO_CANCELLED


def test_batch_size_caps_a_run(db_session, factory, manager, session_factory, settings, clock):
    from dataclasses import replace

    admin = factory.admin()
    _, price = factory.product(stock=50)
    ids = [edited_order(db_session, factory, manager, admin, price, qty=1) for _ in range(3)]
    clock.advance(hours=49)
    scheduler = AutoExpiryScheduler.from_settings(
        manager, session_factory, replace(settings, auto_cancel_batch_size=2), clock=clock
    )

    first = scheduler.run_once()
    second = scheduler.run_once()

    assert (first.found, first.succeeded) == (2, 2)
    assert (second.found, second.succeeded) == (1, 1)
    statuses = {db_session.get(Order, i, populate_existing=True).status for i in ids}
    assert statuses == {OrderStatus.cancelled}


def test_failure_is_isolated_and_rate_warned(db_session, factory, manager, scheduler, clock, monkeypatch, caplog):
    admin = factory.admin()
    _, price = factory.product(stock=20)
    broken_id = edited_order(db_session, factory, manager, admin, price)
    fine_id = edited_order(db_session, factory, manager, admin, price)
    clock.advance(hours=49)

    real_auto_cancel = manager.auto_cancel

    def flaky(db, order_id, reason, hours_waited):
        if order_id == broken_id:
            raise RuntimeError("notification backend exploded")
        return real_auto_cancel(db, order_id, reason, hours_waited)

    monkeypatch.setattr(manager, "auto_cancel", flaky)

    with caplog.at_level(logging.WARNING, logger="dealerhub.scheduler"):
        report = scheduler.run_once()

    assert (report.found, report.succeeded, report.failed) == (2, 1, 1)
    assert db_session.get(Order, fine_id, populate_existing=True).status == OrderStatus.cancelled
    assert db_session.get(Order, broken_id, populate_existing=True).status == OrderStatus.edited_pending_approval
    assert any("failure rate" in r.getMessage() for r in caplog.records)


def test_order_answered_meanwhile_is_skipped(db_session, factory, manager):
    user = factory.user()
    _, price = factory.product()
    order = manager.create_order(db_session, order_request(user.dealer_id, (price, 1)), user)

    assert manager.auto_cancel(db_session, order.id, "late", 50.0) is False
    assert db_session.get(Order, order.id, populate_existing=True).status == OrderStatus.pending


def test_ticks_never_overlap(db_session, factory, manager, scheduler, clock, monkeypatch):
    """
    GIVEN
    - un passage bloqué au milieu de son lot

    THEN
    - un second passage lancé en parallèle est sauté (run_skipped), sans rien traiter
    """
    admin = factory.admin()
    _, price = factory.product(stock=20)
    edited_order(db_session, factory, manager, admin, price)
    clock.advance(hours=49)

    entered, release = threading.Event(), threading.Event()
    real_auto_cancel = manager.auto_cancel

    def slow(db, order_id, reason, hours_waited):
        entered.set()
        release.wait(5)
        return real_auto_cancel(db, order_id, reason, hours_waited)

    monkeypatch.setattr(manager, "auto_cancel", slow)

    reports = []
    worker = threading.Thread(target=lambda: reports.append(scheduler.run_once()))
    worker.start()
    assert entered.wait(5)

    skipped = scheduler.run_once()
    release.set()
    worker.join(5)

    assert skipped.run_skipped
    assert skipped.found == 0
    assert reports[0].succeeded == 1


def test_disabled_scheduler_does_not_query(manager, settings, clock):
    from dataclasses import replace

    def no_db():
        raise AssertionError("session opened while disabled")

    scheduler = AutoExpiryScheduler.from_settings(
        manager, no_db, replace(settings, auto_cancel_enabled=False), clock=clock
    )

    report = scheduler.run_once()

    assert (report.found, report.succeeded, report.failed, report.skipped) == (0, 0, 0, 0)


def test_introspection(db_session, factory, manager, scheduler, clock):
    admin = factory.admin()
    _, price = factory.product(stock=20)
    order_id = edited_order(db_session, factory, manager, admin, price)
    clock.advance(hours=20)

    order = db_session.get(Order, order_id, populate_existing=True)
    assert scheduler.hours_until_auto_cancel(order) == pytest.approx(28.0)
    assert scheduler.pending_cancellation_count() == 0

    clock.advance(hours=30)
    assert scheduler.hours_until_auto_cancel(order) == 0.0
    assert scheduler.pending_cancellation_count() == 1


def test_start_stop_background_thread(scheduler):
    scheduler.interval_seconds = 3600
    scheduler.start()
    assert scheduler.is_alive()

    scheduler.stop()
    assert not scheduler.is_alive()


def test_discount_expiry_sweep(db_session, factory, session_factory, clock):
    expired = factory.discount(end_date=clock() + timedelta(hours=1))
    current = factory.discount()
    expired_id, current_id = expired.id, current.id
    clock.advance(hours=2)

    report = DiscountExpirySweep(session_factory, clock=clock).run_once()

    assert report.succeeded == 1
    assert db_session.get(Discount, expired_id, populate_existing=True).is_active is False
    assert db_session.get(Discount, current_id, populate_existing=True).is_active is True
