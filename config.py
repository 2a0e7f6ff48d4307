"""Configuration module for the POS sale pipeline Flask application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Base configuration class."""

    # Flask
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    DEBUG = os.getenv('FLASK_DEBUG', '0') == '1'
    ENV = os.getenv('FLASK_ENV', 'development')
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # Shared secret for the scheduler calling /internal/sales/*
    INTERNAL_API_KEY = os.getenv('INTERNAL_API_KEY')

    # Database - Support multiple environment variable naming conventions
    # Priority: DATABASE_URL > DB_* > POSTGRES_*
    DATABASE_URL = os.getenv('DATABASE_URL')

    if not DATABASE_URL:
        # Try DB_* variables (Docker style)
        DB_HOST = os.getenv('DB_HOST') or os.getenv('POSTGRES_HOST', 'localhost')
        DB_PORT = os.getenv('DB_PORT') or os.getenv('POSTGRES_PORT', '5432')
        DB_NAME = os.getenv('DB_NAME') or os.getenv('POSTGRES_DB', 'pos')
        DB_USER = os.getenv('DB_USER') or os.getenv('POSTGRES_USER', 'pos')
        DB_PASSWORD = os.getenv('DB_PASSWORD') or os.getenv('POSTGRES_PASSWORD', 'pos')

        DATABASE_URL = (
            f"postgresql://{DB_USER}:{DB_PASSWORD}"
            f"@{DB_HOST}:{DB_PORT}/{DB_NAME}"
        )

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_ECHO = os.getenv('SQLALCHEMY_ECHO', 'false').lower() == 'true'

    # Sale processing queue
    SALES_MAX_RETRIES = int(os.getenv('SALES_MAX_RETRIES', '3'))
    SALES_BASE_BACKOFF_MS = int(os.getenv('SALES_BASE_BACKOFF_MS', '1000'))
    SALES_MAX_BACKOFF_MS = int(os.getenv('SALES_MAX_BACKOFF_MS', '3600000'))  # 1 hour
    SALES_BATCH_SIZE = int(os.getenv('SALES_BATCH_SIZE', '10'))
    SALES_STALE_TIMEOUT_MINUTES = int(os.getenv('SALES_STALE_TIMEOUT_MINUTES', '5'))

    # Inventory deduction
    SALES_ALLOW_NEGATIVE_STOCK = os.getenv('SALES_ALLOW_NEGATIVE_STOCK', 'false').lower() == 'true'
    SALES_APPLY_INGREDIENT_WASTE = os.getenv('SALES_APPLY_INGREDIENT_WASTE', 'false').lower() == 'true'

    # Product mapping: confidence stored for contains-matches ('high' or 'medium')
    FUZZY_MATCH_CONFIDENCE = os.getenv('FUZZY_MATCH_CONFIDENCE', 'high')

    # Orders
    ORDER_NUMBER_PREFIX = os.getenv('ORDER_NUMBER_PREFIX', 'SR')

    # Redis Cache Configuration
    # Shared cache layer for queue stats polled by dashboards and the /metrics scrape
    REDIS_URL = os.getenv('REDIS_URL', 'redis://redis:6379/0')
    CACHE_ENABLED = os.getenv('CACHE_ENABLED', 'true').lower() == 'true'
    CACHE_DEFAULT_TTL = int(os.getenv('CACHE_DEFAULT_TTL', '60'))  # seconds
    CACHE_QUEUE_STATS_TTL = int(os.getenv('CACHE_QUEUE_STATS_TTL', '15'))
    CACHE_KEY_PREFIX = os.getenv('CACHE_KEY_PREFIX', 'pos')


class TestConfig(Config):
    """Configuration used by the test-suite (in-memory SQLite, no Redis)."""

    TESTING = True
    ENV = 'testing'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_ECHO = False
    CACHE_ENABLED = False
    INTERNAL_API_KEY = 'test-internal-key'
    SALES_MAX_RETRIES = 3
    SALES_ALLOW_NEGATIVE_STOCK = False
    SALES_APPLY_INGREDIENT_WASTE = False
    FUZZY_MATCH_CONFIDENCE = 'high'
