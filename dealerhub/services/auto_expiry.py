"""
Tâches périodiques.

- AutoExpiryScheduler : annule les commandes EDITED_PENDING_APPROVAL restées
  sans réponse client au-delà du TTL (même chemin que l'annulation client :
  stock rendu + usage de remise annulé)
- DiscountExpirySweep : désactive les remises dont la date de fin est passée

Un seul thread de fond ; deux passages ne se chevauchent jamais (un tick qui
trouve le précédent encore en cours est sauté). Les commandes non traitées
sont reprises au tick suivant.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from dealerhub.app.core.clock import Clock, utcnow
from dealerhub.app.core.config import Settings
from dealerhub.app.db.models.core_types import OrderStatus
from dealerhub.app.db.models.models_v1 import Discount, Order
from dealerhub.services.orders import OrderLifecycleManager

logger = logging.getLogger("dealerhub.scheduler")

FAILURE_RATE_WARNING = 0.20

SessionFactory = Callable[[], Session]


@dataclass
class ExpiryRunReport:
    job: str
    found: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    run_skipped: bool = False
    ran_at: datetime | None = None

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed

    @property
    def failure_rate(self) -> float:
        return self.failed / self.processed if self.processed else 0.0


class DiscountExpirySweep:
    """Désactive les remises actives dont end_date est dépassée."""

    def __init__(self, session_factory: SessionFactory, *, enabled: bool = True, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.enabled = enabled
        self.clock = clock

    def run_once(self) -> ExpiryRunReport:
        report = ExpiryRunReport(job="discount_expiry")
        if not self.enabled:
            return report

        now = self.clock()
        report.ran_at = now
        db = self.session_factory()
        try:
            res = db.execute(
                update(Discount)
                .where(Discount.is_active.is_(True))
                .where(Discount.end_date < now)
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            report.found = report.succeeded = int(res.rowcount or 0)
        except Exception:
            db.rollback()
            logger.exception("Discount expiry sweep failed")
            report.failed = 1
        finally:
            db.close()

        if report.succeeded:
            logger.info("Deactivated %s expired discount(s)", report.succeeded)
        return report


class AutoExpiryScheduler:
    def __init__(
        self,
        manager: OrderLifecycleManager,
        session_factory: SessionFactory,
        *,
        enabled: bool = True,
        ttl_hours: int = 48,
        batch_size: int = 50,
        interval_seconds: float = 3600,
        clock: Clock = utcnow,
        discount_sweep: DiscountExpirySweep | None = None,
    ):
        self.manager = manager
        self.session_factory = session_factory
        self.enabled = enabled
        self.ttl_hours = ttl_hours
        self.batch_size = batch_size
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.discount_sweep = discount_sweep

        self.last_report: ExpiryRunReport | None = None
        self._run_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_settings(
        cls,
        manager: OrderLifecycleManager,
        session_factory: SessionFactory,
        settings: Settings,
        *,
        clock: Clock = utcnow,
    ) -> "AutoExpiryScheduler":
        return cls(
            manager,
            session_factory,
            enabled=settings.auto_cancel_enabled,
            ttl_hours=settings.auto_cancel_hours,
            batch_size=settings.auto_cancel_batch_size,
            interval_seconds=settings.auto_cancel_interval_seconds,
            clock=clock,
            discount_sweep=DiscountExpirySweep(
                session_factory, enabled=settings.discount_expiry_enabled, clock=clock
            ),
        )

    # ---------- un passage ----------
    def cutoff(self) -> datetime:
        return self.clock() - timedelta(hours=self.ttl_hours)

    def run_once(self) -> ExpiryRunReport:
        if not self.enabled:
            return ExpiryRunReport(job="auto_cancel")

        if not self._run_lock.acquire(blocking=False):
            logger.warning("Auto-cancel run skipped: previous run still in progress")
            return ExpiryRunReport(job="auto_cancel", run_skipped=True)
        try:
            report = self._cancel_expired()
        finally:
            self._run_lock.release()

        self.last_report = report
        return report

    def tick(self) -> list[ExpiryRunReport]:
        reports = [self.run_once()]
        if self.discount_sweep is not None:
            reports.append(self.discount_sweep.run_once())
        return reports

    def _cancel_expired(self) -> ExpiryRunReport:
        now = self.clock()
        cutoff = now - timedelta(hours=self.ttl_hours)
        report = ExpiryRunReport(job="auto_cancel", ran_at=now)

        db = self.session_factory()
        try:
            candidates = db.execute(
                select(Order.id, Order.order_number, Order.updated_at)
                .where(Order.status == OrderStatus.edited_pending_approval)
                .where(Order.updated_at < cutoff)
                .order_by(Order.updated_at.asc(), Order.id.asc())
                .limit(self.batch_size)
            ).all()
            report.found = len(candidates)
            if candidates:
                logger.info("Auto-cancel: %s order(s) waiting more than %sh", len(candidates), self.ttl_hours)

            for order_id, order_number, updated_at in candidates:
                waited = (now - updated_at).total_seconds() / 3600
                try:
                    cancelled = self.manager.auto_cancel(
                        db,
                        order_id,
                        reason=f"Auto-cancelled: no customer response to edit within {self.ttl_hours}h",
                        hours_waited=waited,
                    )
                except Exception:
                    logger.exception("Auto-cancel failed for order %s", order_number)
                    report.failed += 1
                    continue
                if cancelled:
                    report.succeeded += 1
                else:
                    report.skipped += 1
        finally:
            db.close()

        logger.info(
            "Auto-cancel run: found=%s succeeded=%s failed=%s skipped=%s",
            report.found,
            report.succeeded,
            report.failed,
            report.skipped,
        )
        if report.failure_rate > FAILURE_RATE_WARNING:
            logger.warning(
                "Auto-cancel failure rate %.0f%% (%s/%s)",
                report.failure_rate * 100,
                report.failed,
                report.processed,
            )
        return report

    # ---------- introspection ----------
    def pending_cancellation_count(self) -> int:
        db = self.session_factory()
        try:
            return int(
                db.execute(
                    select(func.count())
                    .select_from(Order)
                    .where(Order.status == OrderStatus.edited_pending_approval)
                    .where(Order.updated_at < self.cutoff())
                ).scalar_one()
            )
        finally:
            db.close()

    def hours_until_auto_cancel(self, order: Order) -> float | None:
        """Heures restantes avant annulation auto ; None si la commande n'est pas concernée."""
        if not self.enabled or order.status != OrderStatus.edited_pending_approval:
            return None
        deadline = order.updated_at + timedelta(hours=self.ttl_hours)
        return max((deadline - self.clock()).total_seconds() / 3600, 0.0)

    # ---------- thread de fond ----------
    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="auto-expiry", daemon=True)
        self._thread.start()
        logger.info(
            "Auto-expiry scheduler started (interval=%ss, ttl=%sh, batch=%s)",
            self.interval_seconds,
            self.ttl_hours,
            self.batch_size,
        )

    def stop(self, join: bool = True) -> None:
        self._stop_event.set()
        if join and self._thread is not None:
            self._thread.join()
        self._thread = None

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status(self) -> dict:
        last = self.last_report
        return {
            "enabled": self.enabled,
            "running": self.is_alive(),
            "ttl_hours": self.ttl_hours,
            "batch_size": self.batch_size,
            "interval_seconds": self.interval_seconds,
            "last_run": None
            if last is None
            else {
                "ran_at": last.ran_at,
                "found": last.found,
                "succeeded": last.succeeded,
                "failed": last.failed,
                "skipped": last.skipped,
            },
        }

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.tick()
            except Exception:
                # le thread ne doit pas mourir sur un tick raté
                logger.exception("Scheduler tick failed")
