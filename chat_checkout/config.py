"""
Runtime configuration for the conversational checkout engine.

Values are read from the environment (a local .env file is loaded first)
so that deployments can tune pricing, timeouts and provider credentials
without code changes.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


# Sessions
SESSION_TTL_SECONDS = _env_int("SESSION_TTL_SECONDS", 60 * 60)

# Payments
PAYMENT_TIMEOUT_SECONDS = _env_int("PAYMENT_TIMEOUT_SECONDS", 300)
PAYMENT_SWEEP_INTERVAL_SECONDS = _env_int("PAYMENT_SWEEP_INTERVAL_SECONDS", 5)
MIN_PAYMENT_AMOUNT = _env_float("MIN_PAYMENT_AMOUNT", 100)
MAX_PAYMENT_AMOUNT = _env_float("MAX_PAYMENT_AMOUNT", 10_000_000)
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "XOF")
DEFAULT_COUNTRY = os.getenv("DEFAULT_COUNTRY", "SN")

# Pricing (amounts in FCFA)
FREE_DELIVERY_CITY = os.getenv("FREE_DELIVERY_CITY", "Dakar")
DELIVERY_FEE = _env_float("DELIVERY_FEE", 3000)
DUO_BUNDLE_PRICE = _env_float("DUO_BUNDLE_PRICE", 25200)
TRIO_BUNDLE_PRICE = _env_float("TRIO_BUNDLE_PRICE", 35700)
BULK_DISCOUNT_RATE = _env_float("BULK_DISCOUNT_RATE", 0.2)

# Recommendations
HIGH_INTENT_THRESHOLD = _env_float("HIGH_INTENT_THRESHOLD", 0.7)
MAX_RECOMMENDATIONS = _env_int("MAX_RECOMMENDATIONS", 3)

# Customer support
SUPPORT_URL = os.getenv("SUPPORT_URL", "https://wa.me/221781362728")

# Payment providers
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:3000")
BICTORYS_API_URL = os.getenv("BICTORYS_API_URL", "https://api.test.bictorys.com")
BICTORYS_API_KEY = os.getenv("BICTORYS_API_KEY")
BICTORYS_WEBHOOK_SECRET = os.getenv("BICTORYS_WEBHOOK_SECRET")
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
PROVIDER_HTTP_TIMEOUT = _env_int("PROVIDER_HTTP_TIMEOUT", 10)

# Storage
DATA_DIR = Path(__file__).parent.parent / "data"
DB_PATH = os.getenv("DB_PATH", str(Path(__file__).parent.parent / "db" / "checkout.db"))
PRODUCTS_PATH = os.getenv("PRODUCTS_PATH", str(DATA_DIR / "products.json"))
VECTOR_STORE_PATH = os.getenv("VECTOR_STORE_PATH", "./vector_store")

# Embeddings for catalog search
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://openrouter.ai/api/v1")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "openai/text-embedding-3-small")
SEARCH_MIN_RELEVANCE = _env_float("SEARCH_MIN_RELEVANCE", 0.3)
