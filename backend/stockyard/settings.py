from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except Exception:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "y", "on")


def _env_hours_list(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    out = []
    for part in raw.split(","):
        try:
            value = int(part.strip())
        except Exception:
            continue
        if value > 0:
            out.append(value)
    return tuple(sorted(set(out))) or default


@dataclass(frozen=True)
class EngineSettings:
    env: str = "dev"
    payments_provider: str = "mock"  # mock | stripe | disabled
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_queue: bool = False
    escrow_dispute_window_hours: int = 72
    auto_complete_delivered_days: int = 7
    escalate_to_admin_days: int = 14
    reminder_hours: tuple[int, ...] = (24, 72)
    bulk_max_items: int = 100
    bulk_batch_size: int = 5
    notify_dispatch_mode: str = "thread"  # thread | inline
    notify_max_workers: int = 2
    order_sweep_interval_seconds: int = 300

    @property
    def is_production(self) -> bool:
        return self.env in ("prod", "production")


def load_engine_settings() -> EngineSettings:
    env = (os.getenv("STOCKYARD_ENV", "dev") or "dev").strip().lower()
    provider = (os.getenv("PAYMENTS_PROVIDER") or ("stripe" if env in ("prod", "production") else "mock")).strip().lower()
    mode = (os.getenv("NOTIFY_DISPATCH_MODE") or "thread").strip().lower()
    if mode not in ("thread", "inline"):
        mode = "thread"
    return EngineSettings(
        env=env,
        payments_provider=provider,
        stripe_secret_key=(os.getenv("STRIPE_SECRET_KEY") or "").strip(),
        stripe_webhook_secret=(os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip(),
        stripe_webhook_queue=_env_bool("STRIPE_WEBHOOK_QUEUE", False),
        escrow_dispute_window_hours=_env_int("ESCROW_DISPUTE_WINDOW_HOURS", 72, minimum=1, maximum=24 * 60),
        auto_complete_delivered_days=_env_int("AUTO_COMPLETE_DELIVERED_DAYS", 7, minimum=1, maximum=365),
        escalate_to_admin_days=_env_int("ESCALATE_TO_ADMIN_DAYS", 14, minimum=1, maximum=365),
        reminder_hours=_env_hours_list("REMINDER_HOURS", (24, 72)),
        bulk_max_items=_env_int("BULK_MAX_ITEMS", 100, minimum=1, maximum=500),
        bulk_batch_size=_env_int("BULK_BATCH_SIZE", 5, minimum=1, maximum=25),
        notify_dispatch_mode=mode,
        notify_max_workers=_env_int("NOTIFY_MAX_WORKERS", 2, minimum=1, maximum=16),
        order_sweep_interval_seconds=_env_int("ORDER_SWEEP_INTERVAL_SECONDS", 300, minimum=30, maximum=86400),
    )
