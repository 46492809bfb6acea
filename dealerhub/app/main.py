from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from dealerhub.app.api.v1.router import router as v1_router
from dealerhub.app.core.clock import Clock, utcnow
from dealerhub.app.core.config import Settings, get_settings
from dealerhub.app.core.errors import DealerHubError, DiscountRejectedError
from dealerhub.app.core.logging import configure_logging
from dealerhub.services.auto_expiry import AutoExpiryScheduler, SessionFactory
from dealerhub.services.notifications import Notifier
from dealerhub.services.orders import OrderLifecycleManager


async def dealerhub_error_handler(request: Request, exc: DealerHubError) -> JSONResponse:
    body = {"detail": exc.detail}
    if isinstance(exc, DiscountRejectedError):
        body["reason"] = exc.reason.value
    return JSONResponse(status_code=exc.status_code, content=body)


def create_app(
    *,
    settings: Settings | None = None,
    session_factory: SessionFactory | None = None,
    notifier: Notifier | None = None,
    clock: Clock = utcnow,
) -> FastAPI:
    settings = settings or get_settings()
    if session_factory is None:
        from dealerhub.app.db.session import SessionLocal

        session_factory = SessionLocal

    manager = OrderLifecycleManager.from_settings(settings, notifier=notifier, clock=clock)
    scheduler = AutoExpiryScheduler.from_settings(manager, session_factory, settings, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        if settings.auto_cancel_enabled or settings.discount_expiry_enabled:
            scheduler.start()
        yield
        scheduler.stop()

    app = FastAPI(title="DealerHub Orders", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.order_manager = manager
    app.state.scheduler = scheduler

    app.add_exception_handler(DealerHubError, dealerhub_error_handler)
    app.include_router(v1_router, prefix="/v1")
    return app


app = create_app()
