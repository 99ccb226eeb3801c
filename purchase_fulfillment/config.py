import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_FLOOR

DEV_ENV_NAMES = {'development', 'dev', 'local', 'test'}
DEFAULT_PLATFORM_FEE_RATE = Decimal('0.25')


def safe_int_env(name, default=0, minimum=1, maximum=100000):
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
    except Exception:
        value = int(default)
    return min(max(value, minimum), maximum)


def safe_float_env(name, default=0.0):
    raw = os.getenv(name, str(default)).strip()
    try:
        value = float(raw)
    except Exception:
        return default
    return min(max(value, 0.0), 1.0)


def parse_fee_rate(raw, default=DEFAULT_PLATFORM_FEE_RATE):
    """Parse a fee rate given as a fraction ("0.25") or a percentage ("25%")."""
    text = str(raw or '').strip()
    if not text:
        return default
    try:
        if text.endswith('%'):
            rate = Decimal(text[:-1].strip()) / Decimal(100)
        else:
            rate = Decimal(text)
    except InvalidOperation:
        return default
    if rate < 0 or rate >= 1:
        return default
    return rate


def _split_env_set(name, lower=False):
    values = set()
    for part in os.getenv(name, '').split(','):
        part = part.strip()
        if part:
            values.add(part.lower() if lower else part)
    return frozenset(values)


@dataclass(frozen=True)
class PricingPolicy:
    """Fee rules resolved once per request from the app config."""

    platform_fee_rate: Decimal = DEFAULT_PLATFORM_FEE_RATE
    default_currency: str = 'usd'

    def platform_fee_for(self, amount):
        if amount < 0:
            raise ValueError('amount must be non-negative')
        fee = (Decimal(int(amount)) * self.platform_fee_rate).to_integral_value(rounding=ROUND_FLOOR)
        return int(fee)

    def creator_share_for(self, amount):
        return int(amount) - self.platform_fee_for(amount)


@dataclass(frozen=True)
class AppConfig:
    """Central config object, built from the environment by load_config()."""

    flask_secret_key: str = ''
    log_level: str = 'INFO'
    runtime_env: str = 'production'
    stripe_secret_key: str = ''
    stripe_publishable_key: str = ''
    stripe_webhook_secret: str = ''
    site_url: str = 'http://localhost:5000'
    platform_fee_rate: Decimal = DEFAULT_PLATFORM_FEE_RATE
    default_currency: str = 'usd'
    webhook_handler_timeout_seconds: int = 20
    reconcile_page_size: int = 100
    purchase_history_limit: int = 50
    admin_uids: frozenset = field(default_factory=frozenset)
    admin_emails: frozenset = field(default_factory=frozenset)
    sentry_dsn: str = ''
    sentry_environment: str = 'production'
    sentry_release: str = 'purchase-fulfillment'
    sentry_traces_sample_rate: float = 0.0

    @property
    def is_dev_like(self):
        return self.runtime_env in DEV_ENV_NAMES

    def pricing_policy(self):
        return PricingPolicy(
            platform_fee_rate=self.platform_fee_rate,
            default_currency=self.default_currency,
        )


def resolve_runtime_env():
    return (
        os.getenv('SENTRY_ENVIRONMENT')
        or os.getenv('FLASK_ENV')
        or os.getenv('ENV')
        or ('production' if os.getenv('RENDER') else 'development')
    ).strip().lower()


def load_config() -> AppConfig:
    runtime_env = resolve_runtime_env()
    config = AppConfig(
        flask_secret_key=os.getenv('FLASK_SECRET_KEY', ''),
        log_level=(os.getenv('LOG_LEVEL', 'INFO') or 'INFO').strip().upper(),
        runtime_env=runtime_env,
        stripe_secret_key=(os.getenv('STRIPE_SECRET_KEY', '') or '').strip(),
        stripe_publishable_key=(os.getenv('STRIPE_PUBLISHABLE_KEY', '') or '').strip(),
        stripe_webhook_secret=(os.getenv('STRIPE_WEBHOOK_SECRET', '') or '').strip(),
        site_url=(os.getenv('SITE_URL', 'http://localhost:5000') or 'http://localhost:5000').strip().rstrip('/'),
        platform_fee_rate=parse_fee_rate(os.getenv('PLATFORM_FEE_RATE', '')),
        default_currency=(os.getenv('DEFAULT_CURRENCY', 'usd') or 'usd').strip().lower(),
        webhook_handler_timeout_seconds=safe_int_env('WEBHOOK_HANDLER_TIMEOUT_SECONDS', 20, minimum=1, maximum=120),
        reconcile_page_size=safe_int_env('RECONCILE_PAGE_SIZE', 100, minimum=1, maximum=100),
        purchase_history_limit=safe_int_env('PURCHASE_HISTORY_LIMIT', 50, minimum=1, maximum=500),
        admin_uids=_split_env_set('ADMIN_UIDS'),
        admin_emails=_split_env_set('ADMIN_EMAILS', lower=True),
        sentry_dsn=os.getenv('SENTRY_DSN_BACKEND', '').strip(),
        sentry_environment=(os.getenv('SENTRY_ENVIRONMENT', os.getenv('FLASK_ENV', 'production')) or 'production').strip(),
        sentry_release=(os.getenv('SENTRY_RELEASE', 'purchase-fulfillment') or 'purchase-fulfillment').strip(),
        sentry_traces_sample_rate=safe_float_env('SENTRY_TRACES_SAMPLE_RATE', 0.0),
    )
    if not config.is_dev_like and not config.flask_secret_key.strip():
        raise RuntimeError('FLASK_SECRET_KEY must be set in non-development environments.')
    return config
