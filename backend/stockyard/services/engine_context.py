from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from flask import current_app

from stockyard.extensions import db
from stockyard.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from stockyard.integrations.payments.base import PaymentsProvider
from stockyard.integrations.payments.factory import build_payments_provider
from stockyard.services.notification_dispatcher import NotificationDispatcher
from stockyard.services.order_errors import DependencyUnavailable
from stockyard.settings import EngineSettings

logger = logging.getLogger(__name__)

EXTENSION_KEY = "order_engine"


@dataclass
class EngineContext:
    """Handles every order operation receives: store session, processor, notifier, clock, settings."""

    settings: EngineSettings
    notifier: NotificationDispatcher
    payments_provider: PaymentsProvider | None = None
    payments_unavailable_reason: str = ""
    clock: Callable[[], datetime] = field(default=datetime.utcnow)

    @property
    def session(self):
        return db.session

    def now(self) -> datetime:
        return self.clock()

    @property
    def payments_configured(self) -> bool:
        return self.payments_provider is not None

    def payments(self) -> PaymentsProvider:
        if self.payments_provider is None:
            raise DependencyUnavailable(
                "Payment processor is not configured",
                code="PAYMENTS_UNAVAILABLE",
                details={"reason": self.payments_unavailable_reason or "not_configured"},
            )
        return self.payments_provider

    def notify(self, event_type: str, *, user_id: int | None, order_id: int | None = None, payload: dict | None = None, dedupe_key: str | None = None) -> None:
        self.notifier.emit(event_type, user_id=user_id, order_id=order_id, payload=payload, dedupe_key=dedupe_key)


def build_engine_context(app, settings: EngineSettings) -> EngineContext:
    notifier = NotificationDispatcher(
        app,
        mode=settings.notify_dispatch_mode,
        max_workers=settings.notify_max_workers,
    )
    provider = None
    reason = ""
    try:
        provider = build_payments_provider(settings)
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as exc:
        reason = str(exc)
        app.logger.warning("payments_provider_unavailable reason=%s", reason)
    ctx = EngineContext(
        settings=settings,
        notifier=notifier,
        payments_provider=provider,
        payments_unavailable_reason=reason,
    )
    app.extensions[EXTENSION_KEY] = ctx
    return ctx


def current_engine() -> EngineContext:
    return current_app.extensions[EXTENSION_KEY]
