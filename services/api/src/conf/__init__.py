from typing import Optional

from pydantic import BaseModel

from clients.mailer import MailerConfig
from models.entities.couchbase.auctions import AuctionConfig
from utils import env, log
from utils.env import EnvVarSpec

logger = log.get_logger(__name__)

#### Types ####

class HttpServerConf(BaseModel):
    host: str
    port: int
    autoreload: bool

class BiddingConf(BaseModel):
    default_bid_increment: float
    max_retries: int

class SchedulerConf(BaseModel):
    lot_sweep_interval_seconds: int
    settlement_retry_interval_seconds: int

#### Env Vars ####

## Logging ##

LOG_LEVEL = EnvVarSpec(id="LOG_LEVEL", default="INFO")

ENVIRONMENT = EnvVarSpec(id="ENVIRONMENT", default="development")

## HTTP ##

HTTP_HOST = EnvVarSpec(id="HTTP_HOST", default="0.0.0.0")

HTTP_PORT = EnvVarSpec(id="HTTP_PORT", default="8000", parse=int, type=(int, ...))

HTTP_AUTORELOAD = EnvVarSpec(
    id="HTTP_AUTORELOAD",
    parse=lambda x: x.lower() == "true",
    default="false",
    type=(bool, ...),
)

HTTP_EXPOSE_ERRORS = EnvVarSpec(
    id="HTTP_EXPOSE_ERRORS",
    default="false",
    parse=lambda x: x.lower() == "true",
    type=(bool, ...),
)

## Admin ##

ADMIN_API_KEY = EnvVarSpec(id="ADMIN_API_KEY", is_optional=True, is_secret=True)

## Lot timing ##

SNIPER_WINDOW_SECONDS = EnvVarSpec(
    id="SNIPER_WINDOW_SECONDS", default="120", parse=int, type=(int, ...)
)

SNIPER_MIN_EXTENSION_SECONDS = EnvVarSpec(
    id="SNIPER_MIN_EXTENSION_SECONDS", default="10", parse=int, type=(int, ...)
)

LOT_STAGGER_SECONDS = EnvVarSpec(
    id="LOT_STAGGER_SECONDS", default="10", parse=int, type=(int, ...)
)

LOT_DEFAULT_BASE_MINUTES = EnvVarSpec(
    id="LOT_DEFAULT_BASE_MINUTES", default="5", parse=int, type=(int, ...)
)

## Bidding ##

LOT_DEFAULT_BID_INCREMENT = EnvVarSpec(
    id="LOT_DEFAULT_BID_INCREMENT", default="10", parse=float, type=(float, ...)
)

BID_MAX_RETRIES = EnvVarSpec(id="BID_MAX_RETRIES", default="5", parse=int, type=(int, ...))

## Fees ##

BUYER_PREMIUM_PCT = EnvVarSpec(
    id="BUYER_PREMIUM_PCT", default="10", parse=float, type=(float, ...)
)

SELLER_COMMISSION_PCT = EnvVarSpec(
    id="SELLER_COMMISSION_PCT", default="15", parse=float, type=(float, ...)
)

BUYER_INVOICE_DUE_DAYS = EnvVarSpec(
    id="BUYER_INVOICE_DUE_DAYS", default="7", parse=int, type=(int, ...)
)

SELLER_INVOICE_DUE_DAYS = EnvVarSpec(
    id="SELLER_INVOICE_DUE_DAYS", default="14", parse=int, type=(int, ...)
)

## Scheduler ##

LOT_SWEEP_INTERVAL_SECONDS = EnvVarSpec(
    id="LOT_SWEEP_INTERVAL_SECONDS", default="1", parse=int, type=(int, ...)
)

SETTLEMENT_RETRY_INTERVAL_SECONDS = EnvVarSpec(
    id="SETTLEMENT_RETRY_INTERVAL_SECONDS", default="60", parse=int, type=(int, ...)
)

## Notifications ##

REALTIME_SERVICE_URL = EnvVarSpec(id="REALTIME_SERVICE_URL", is_optional=True)

SMTP_HOST = EnvVarSpec(id="SMTP_HOST", is_optional=True)
SMTP_PORT = EnvVarSpec(id="SMTP_PORT", default="587", parse=int, type=(int, ...))
SMTP_USERNAME = EnvVarSpec(id="SMTP_USERNAME", is_optional=True)
SMTP_PASSWORD = EnvVarSpec(id="SMTP_PASSWORD", is_optional=True, is_secret=True)
SMTP_FROM = EnvVarSpec(id="SMTP_FROM", default="noreply@localhost")
SMTP_USE_TLS = EnvVarSpec(
    id="SMTP_USE_TLS",
    default="true",
    parse=lambda x: x.lower() == "true",
    type=(bool, ...),
)

#### Validation ####
VALIDATED_ENV_VARS = [
    HTTP_AUTORELOAD,
    HTTP_EXPOSE_ERRORS,
    HTTP_PORT,
    LOG_LEVEL,
    ADMIN_API_KEY,
    SNIPER_WINDOW_SECONDS,
    SNIPER_MIN_EXTENSION_SECONDS,
    LOT_STAGGER_SECONDS,
    LOT_DEFAULT_BASE_MINUTES,
    LOT_DEFAULT_BID_INCREMENT,
    BID_MAX_RETRIES,
    BUYER_PREMIUM_PCT,
    SELLER_COMMISSION_PCT,
    BUYER_INVOICE_DUE_DAYS,
    SELLER_INVOICE_DUE_DAYS,
    LOT_SWEEP_INTERVAL_SECONDS,
    SETTLEMENT_RETRY_INTERVAL_SECONDS,
    REALTIME_SERVICE_URL,
    SMTP_HOST,
    SMTP_PORT,
    SMTP_USE_TLS,
]

def validate() -> bool:
    return env.validate(VALIDATED_ENV_VARS)

#### Getters ####

def get_http_expose_errors() -> bool:
    return env.parse(HTTP_EXPOSE_ERRORS)

def get_log_level() -> str:
    return env.parse(LOG_LEVEL)

def get_environment() -> str:
    return env.parse(ENVIRONMENT)

def get_admin_api_key() -> Optional[str]:
    return env.parse(ADMIN_API_KEY)

def get_http_conf() -> HttpServerConf:
    return HttpServerConf(
        host=env.parse(HTTP_HOST),
        port=env.parse(HTTP_PORT),
        autoreload=env.parse(HTTP_AUTORELOAD),
    )

def get_auction_config() -> AuctionConfig:
    """Defaults captured onto each new auction."""
    return AuctionConfig(
        sniper_window_seconds=env.parse(SNIPER_WINDOW_SECONDS),
        sniper_min_extension_seconds=env.parse(SNIPER_MIN_EXTENSION_SECONDS),
        stagger_seconds=env.parse(LOT_STAGGER_SECONDS),
        default_lot_base_minutes=env.parse(LOT_DEFAULT_BASE_MINUTES),
        buyer_premium_pct=env.parse(BUYER_PREMIUM_PCT),
        seller_commission_pct=env.parse(SELLER_COMMISSION_PCT),
        buyer_invoice_due_days=env.parse(BUYER_INVOICE_DUE_DAYS),
        seller_invoice_due_days=env.parse(SELLER_INVOICE_DUE_DAYS),
    )

def get_bidding_conf() -> BiddingConf:
    return BiddingConf(
        default_bid_increment=env.parse(LOT_DEFAULT_BID_INCREMENT),
        max_retries=max(0, env.parse(BID_MAX_RETRIES)),
    )

def get_scheduler_conf() -> SchedulerConf:
    return SchedulerConf(
        lot_sweep_interval_seconds=max(1, env.parse(LOT_SWEEP_INTERVAL_SECONDS)),
        settlement_retry_interval_seconds=max(1, env.parse(SETTLEMENT_RETRY_INTERVAL_SECONDS)),
    )

def get_realtime_service_url() -> Optional[str]:
    return env.parse(REALTIME_SERVICE_URL)

def get_mailer_config() -> MailerConfig:
    return MailerConfig(
        host=env.parse(SMTP_HOST),
        port=env.parse(SMTP_PORT),
        username=env.parse(SMTP_USERNAME),
        password=env.parse(SMTP_PASSWORD),
        sender=env.parse(SMTP_FROM),
        use_tls=env.parse(SMTP_USE_TLS),
    )
