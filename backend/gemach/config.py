# backend/gemach/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///gemach.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Card payments (Stripe)
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_PUBLISHABLE_KEY = os.environ.get("STRIPE_PUBLISHABLE_KEY") or os.environ.get("VITE_STRIPE_PUBLISHABLE_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")

    # PayPal REST
    PAYPAL_CLIENT_ID = os.environ.get("PAYPAL_CLIENT_ID")
    PAYPAL_CLIENT_SECRET = os.environ.get("PAYPAL_CLIENT_SECRET")
    PAYPAL_WEBHOOK_ID = os.environ.get("PAYPAL_WEBHOOK_ID")
    PAYPAL_API_BASE = os.environ.get("PAYPAL_API_BASE", "https://api-m.sandbox.paypal.com")
    PROVIDER_HTTP_TIMEOUT = float(os.environ.get("PROVIDER_HTTP_TIMEOUT", "15"))

    DEPOSIT_CURRENCY = os.environ.get("DEPOSIT_CURRENCY", "usd")

    # Status sync / retry sweep
    PAYMENT_RETRY_MAX_ATTEMPTS = int(os.environ.get("PAYMENT_RETRY_MAX_ATTEMPTS", "3"))
    PAYMENT_RETRY_BASE_MINUTES = int(os.environ.get("PAYMENT_RETRY_BASE_MINUTES", "30"))
    PENDING_PAYMENT_STALE_MINUTES = int(os.environ.get("PENDING_PAYMENT_STALE_MINUTES", "10"))

    # Pay-later status links
    PAY_LATER_TOKEN_TTL_DAYS = int(os.environ.get("PAY_LATER_TOKEN_TTL_DAYS", "30"))
