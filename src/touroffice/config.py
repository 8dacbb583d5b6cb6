"""Runtime settings loaded from environment variables.

Every value has a safe default for local development except secrets
(database URL, Stripe keys), which are validated by the component that
needs them.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache

_BRAND_KEY_PREFIX = "STRIPE_SECRET_KEY_"


@dataclass(frozen=True)
class Settings:
    """Application settings.

    Attributes:
        database_url: libpq DSN or URL for the ledger database.
        stripe_default_key: Stripe secret key for the default brand.
        stripe_brand_keys: Per-brand Stripe keys (brand slug -> key), read
            from STRIPE_SECRET_KEY_<BRAND> variables.
        stripe_webhook_secrets: Every endpoint secret accepted by the webhook.
        gateway_timeout_seconds: Upper bound for a single gateway HTTP call.
        lunch_tax_rate: Tax rate applied to lunch order subtotals.
        booking_number_prefix: Prefix of human-readable booking numbers.
        default_currency: ISO currency code used when a record has none.
        order_cutoff_hours: Hours before the event when ordering closes.
        large_group_cutoff_hours: Cutoff used for large parties.
        large_group_threshold: Party size at which the large cutoff applies.
        tasks_backend: inline | http | cloud_tasks.
        worker_base_url: Base URL of the worker service.
        internal_task_secret: Shared secret checked on worker task routes.
        tasks_oidc_audience: Expected audience of Cloud Tasks OIDC tokens.
        tasks_oidc_service_account: Service account Cloud Tasks signs as.
        gcp_project: GCP project hosting the task queue.
        gcp_location: Cloud Tasks queue location.
        gcp_tasks_queue: Cloud Tasks queue name.
        tasks_http_timeout_seconds: Timeout for HTTP task handoff and notifier calls.
        notifier_url: Endpoint of the external notifier (None = log only).
        app_role: public | worker.
    """

    database_url: str | None = None
    stripe_default_key: str | None = None
    stripe_brand_keys: dict[str, str] = field(default_factory=dict)
    stripe_webhook_secrets: tuple[str, ...] = ()
    gateway_timeout_seconds: int = 10
    lunch_tax_rate: Decimal = Decimal("0.091")
    booking_number_prefix: str = "TB"
    default_currency: str = "usd"
    order_cutoff_hours: int = 48
    large_group_cutoff_hours: int = 72
    large_group_threshold: int = 8
    tasks_backend: str = "inline"
    worker_base_url: str = "http://worker:8000"
    internal_task_secret: str = ""
    tasks_oidc_audience: str = ""
    tasks_oidc_service_account: str | None = None
    gcp_project: str | None = None
    gcp_location: str = "us-central1"
    gcp_tasks_queue: str = "touroffice-default"
    tasks_http_timeout_seconds: int = 30
    notifier_url: str | None = None
    app_role: str = "public"


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _brand_keys(environ: dict[str, str]) -> dict[str, str]:
    keys = {}
    for name, value in environ.items():
        if name.startswith(_BRAND_KEY_PREFIX) and value:
            brand = name[len(_BRAND_KEY_PREFIX):].lower()
            keys[brand] = value
    return keys


def load_settings(environ: dict[str, str] | None = None) -> Settings:
    """Build Settings from an environment mapping (defaults to os.environ)."""
    env = dict(os.environ if environ is None else environ)

    webhook_secrets = _split_csv(env.get("STRIPE_WEBHOOK_SECRETS", ""))
    # Single-secret deployments keep working.
    if not webhook_secrets and env.get("STRIPE_WEBHOOK_SECRET"):
        webhook_secrets = (env["STRIPE_WEBHOOK_SECRET"],)

    return Settings(
        database_url=env.get("DATABASE_URL") or None,
        stripe_default_key=env.get("STRIPE_SECRET_KEY") or None,
        stripe_brand_keys=_brand_keys(env),
        stripe_webhook_secrets=webhook_secrets,
        gateway_timeout_seconds=int(env.get("GATEWAY_TIMEOUT_SECONDS", "10")),
        lunch_tax_rate=Decimal(env.get("LUNCH_TAX_RATE", "0.091")),
        booking_number_prefix=env.get("BOOKING_NUMBER_PREFIX", "TB"),
        default_currency=env.get("DEFAULT_CURRENCY", "usd").lower(),
        order_cutoff_hours=int(env.get("ORDER_CUTOFF_HOURS", "48")),
        large_group_cutoff_hours=int(env.get("LARGE_GROUP_CUTOFF_HOURS", "72")),
        large_group_threshold=int(env.get("LARGE_GROUP_THRESHOLD", "8")),
        tasks_backend=env.get("TASKS_BACKEND", "inline"),
        worker_base_url=env.get("WORKER_BASE_URL", "http://worker:8000"),
        internal_task_secret=env.get("INTERNAL_TASK_SECRET", ""),
        tasks_oidc_audience=env.get("TASKS_OIDC_AUDIENCE", ""),
        tasks_oidc_service_account=env.get("TASKS_OIDC_SERVICE_ACCOUNT") or None,
        gcp_project=env.get("GOOGLE_CLOUD_PROJECT") or env.get("GCP_PROJECT_ID") or None,
        gcp_location=env.get("GCP_LOCATION", "us-central1"),
        gcp_tasks_queue=env.get("GCP_TASKS_QUEUE", "touroffice-default"),
        tasks_http_timeout_seconds=int(env.get("TASKS_HTTP_TIMEOUT", "30")),
        notifier_url=env.get("NOTIFIER_URL") or None,
        app_role=env.get("APP_ROLE", "public"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings (call get_settings.cache_clear() in tests)."""
    return load_settings()
