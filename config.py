"""Configuration module for Flask application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Base configuration class."""

    # Flask
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    DEBUG = os.getenv('FLASK_DEBUG', '1') == '1'
    ENV = os.getenv('FLASK_ENV', 'development')
    TESTING = False

    # Session Configuration (Production-safe defaults)
    SESSION_COOKIE_SECURE = os.getenv('SESSION_COOKIE_SECURE', 'false').lower() == 'true'
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = os.getenv('SESSION_COOKIE_SAMESITE', 'Lax')
    PERMANENT_SESSION_LIFETIME = 86400  # 24 hours

    # Inventory / billing backend (hospital ERP)
    INVENTORY_API_URL = os.getenv('INVENTORY_API_URL', 'http://localhost:8000/api/hms')
    INVENTORY_API_TOKEN = os.getenv('INVENTORY_API_TOKEN')
    INVENTORY_TIMEOUT = float(os.getenv('INVENTORY_TIMEOUT', '8'))  # seconds
    RELEASE_TIMEOUT = float(os.getenv('RELEASE_TIMEOUT', '3'))  # seconds

    # Reservation retry policy
    RESERVATION_RETRIES = int(os.getenv('RESERVATION_RETRIES', '2'))
    RESERVATION_BACKOFF_BASE_MS = int(os.getenv('RESERVATION_BACKOFF_BASE_MS', '150'))
    RESERVATION_JITTER_MS = int(os.getenv('RESERVATION_JITTER_MS', '60'))

    # Product search
    SEARCH_DEBOUNCE_MS = int(os.getenv('SEARCH_DEBOUNCE_MS', '220'))

    # Cart persistence (Redis, falls back to the Flask session)
    REDIS_URL = os.getenv('REDIS_URL', 'redis://redis:6379/0')
    CART_STORAGE_ENABLED = os.getenv('CART_STORAGE_ENABLED', 'true').lower() == 'true'
    CART_KEY_PREFIX = os.getenv('CART_KEY_PREFIX', 'pos_cart_v2')
    CART_TTL = int(os.getenv('CART_TTL', '43200'))  # 12 hours

    # Checkout
    DEFAULT_PAYMENT_METHOD = os.getenv('DEFAULT_PAYMENT_METHOD', 'cash')


class TestConfig(Config):
    """Configuration used by the test suite."""

    TESTING = True
    DEBUG = False
    SECRET_KEY = 'test-secret-key'
    INVENTORY_API_URL = 'http://inventory.test/api'
    INVENTORY_API_TOKEN = 'test-token'
    CART_STORAGE_ENABLED = False
    RESERVATION_BACKOFF_BASE_MS = 0
    RESERVATION_JITTER_MS = 0
    SEARCH_DEBOUNCE_MS = 0
