"""Configuration management for the beat marketplace order core"""

import os
import logging
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env'))

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Environment detection: ENVIRONMENT takes absolute priority, then deployment heuristics
    ENVIRONMENT = os.getenv("ENVIRONMENT", "").lower().strip()
    if ENVIRONMENT:
        IS_PRODUCTION = (ENVIRONMENT == "production")
    else:
        IS_PRODUCTION = bool(os.getenv("RAILWAY_PUBLIC_DOMAIN"))
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    # Database
    # Development default is a local SQLite file driven through aiosqlite
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./beatmarket.db")
    DATABASE_ECHO = _env_bool("DATABASE_ECHO", "false")

    # Operator notifications (Telegram)
    TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
    GENERIC_BOT_TOKEN = os.getenv("BOT_TOKEN")  # Legacy fallback
    BOT_TOKEN = TELEGRAM_BOT_TOKEN or GENERIC_BOT_TOKEN
    ADMIN_CHAT_ID = os.getenv("ADMIN_CHAT_ID")
    NOTIFICATIONS_ENABLED = _env_bool("NOTIFICATIONS_ENABLED", "true")
    NOTIFICATION_TIMEOUT_SECONDS = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10"))

    if not BOT_TOKEN:
        logger.warning("⚠️ No TELEGRAM_BOT_TOKEN found. Operator notifications will be skipped")

    # Order lifecycle
    ORDER_REF_PREFIX = os.getenv("ORDER_REF_PREFIX", "808")
    ORDER_CONFIRMATION_TIMEOUT_MINUTES = int(os.getenv("ORDER_CONFIRMATION_TIMEOUT_MINUTES", "10"))
    ORDER_EXPIRY_SWEEP_SECONDS = int(os.getenv("ORDER_EXPIRY_SWEEP_SECONDS", "60"))
    ORDER_EXPIRY_BATCH_SIZE = int(os.getenv("ORDER_EXPIRY_BATCH_SIZE", "50"))
    DEFAULT_CANCEL_REASON = os.getenv("DEFAULT_CANCEL_REASON", "payment not received")

    # Ledger
    SELLER_PAYOUT_RATE = Decimal(os.getenv("SELLER_PAYOUT_RATE", "0.90"))
    MIN_WITHDRAWAL_CENTS = int(os.getenv("MIN_WITHDRAWAL_CENTS", "100"))
    RECONCILIATION_INTERVAL_MINUTES = int(os.getenv("RECONCILIATION_INTERVAL_MINUTES", "60"))

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info(f"🔧 Marketplace Environment Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Is Production: {Config.IS_PRODUCTION}")
        logger.info(f"   Database Driver: {Config.DATABASE_URL.split('://', 1)[0]}")
        logger.info(f"   Notifications: {'enabled' if Config.NOTIFICATIONS_ENABLED and Config.BOT_TOKEN else 'disabled'}")
        logger.info(f"   Confirmation Timeout: {Config.ORDER_CONFIRMATION_TIMEOUT_MINUTES} min")
        logger.info(f"   Seller Payout Rate: {Config.SELLER_PAYOUT_RATE}")
