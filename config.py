# config.py
import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))


def _env_float(name, default):
    return float(os.getenv(name, default))


def _env_int(name, default):
    return int(os.getenv(name, default))


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")

    # ----- PostgreSQL or SQLite auto configure -----
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL") or \
        f"sqlite:///{os.path.join(BASE_DIR, 'instance', 'rapidred.db')}"
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # matching
    SEARCH_RADIUS_KM = _env_float("SEARCH_RADIUS_KM", 20)
    MAX_MATCH_RESULTS = _env_int("MAX_MATCH_RESULTS", 0) or None
    MIN_DONATION_INTERVAL_DAYS = _env_int("MIN_DONATION_INTERVAL_DAYS", 90) or None

    # retries for lock-wait / deadlock on mutating operations
    CONTENTION_RETRIES = _env_int("CONTENTION_RETRIES", 5)
    CONTENTION_BACKOFF_SECONDS = _env_float("CONTENTION_BACKOFF_SECONDS", 0.05)

    # reliability score deltas
    RELIABILITY_COMPLETED_BONUS = _env_int("RELIABILITY_COMPLETED_BONUS", 5)
    RELIABILITY_NO_SHOW_PENALTY = _env_int("RELIABILITY_NO_SHOW_PENALTY", 15)
    RELIABILITY_DECLINE_PENALTY = _env_int("RELIABILITY_DECLINE_PENALTY", 2)

    GEOCODER_USER_AGENT = os.getenv("GEOCODER_USER_AGENT", "rapidred-engine")
    GEOCODER_TIMEOUT = _env_float("GEOCODER_TIMEOUT", 5)
    GEOCODER_CACHE_SIZE = _env_int("GEOCODER_CACHE_SIZE", 1024)

    SOCKETIO_ASYNC_MODE = os.getenv("SOCKETIO_ASYNC_MODE", "threading")

    # Twilio optional
    TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
    TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
    TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER")


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    # sqlite busy timeout so concurrent writers wait instead of failing fast
    SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 30}}
    CONTENTION_BACKOFF_SECONDS = 0.01
    GEOCODER_USER_AGENT = "rapidred-engine-tests"
