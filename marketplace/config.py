# marketplace.config
from pathlib import Path
from decimal import Decimal
import json
import os
from dotenv import load_dotenv

# Calculer le chemin du projet puis charger .env de manière explicite
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH, override=False)

"""
Configuration centrale du backend marketplace.

- Charge le fichier .env à la racine du projet (BASE_DIR/.env)
- Normalise et expose les secrets/URLs (Supabase, ClickPesa, Flutterwave)
- Expose les paramètres métier configurables (TVA, livraison, coupons, commission, frais de retrait)
- Expose la liste blanche CORS et les réglages du poller de statut
"""

def _clean_env(v: str) -> str:
    """
    Nettoie une valeur d'environnement:
    - supprime les espaces et guillemets (simples, doubles) et backticks
    - retourne toujours une chaîne (jamais None)
    """
    return (v or "").strip().strip("'").strip('"').strip("`")

def _json_env(name: str, default: dict) -> dict:
    """
    Lit une table JSON depuis l'environnement (ex: {"Dar es Salaam": 0.8}).
    - Retourne `default` si la variable est absente ou illisible.
    """
    raw = _clean_env(os.getenv(name) or "")
    if not raw:
        return dict(default)
    try:
        data = json.loads(raw)
    except ValueError:
        return dict(default)
    return data if isinstance(data, dict) else dict(default)

# Supabase: URL et clés (anon pour l'auth utilisateur, service pour les écritures serveur)
SUPABASE_URL = _clean_env(os.getenv("SUPABASE_URL") or "")
SUPABASE_ANON = _clean_env(os.getenv("SUPABASE_ANON_KEY") or os.getenv("SUPABASE_KEY") or "")
SUPABASE_SERVICE_KEY = _clean_env(os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_SERVICE_KEY") or "")

if SUPABASE_URL and not SUPABASE_URL.startswith("http"):
    SUPABASE_URL = "https://" + SUPABASE_URL
if SUPABASE_URL.endswith("/"):
    SUPABASE_URL = SUPABASE_URL.rstrip("/")

# CORS: liste blanche explicite; la première origine est l'origine canonique de production
ALLOWED_ORIGINS = [
    o.strip()
    for o in os.getenv(
        "ALLOWED_ORIGINS",
        "https://www.blinno.app,https://blinno.app,http://localhost:5173,http://localhost:3000",
    ).split(",")
    if o.strip()
]
CANONICAL_ORIGIN = ALLOWED_ORIGINS[0] if ALLOWED_ORIGINS else "https://www.blinno.app"

# ClickPesa (USSD push + checkout hébergé)
CLICKPESA_BASE_URL = _clean_env(os.getenv("CLICKPESA_BASE_URL") or "https://api.clickpesa.com/third-parties").rstrip("/")
CLICKPESA_CLIENT_ID = _clean_env(os.getenv("CLICKPESA_CLIENT_ID") or "")
CLICKPESA_API_KEY = _clean_env(os.getenv("CLICKPESA_API_KEY") or "")
CLICKPESA_CHECKSUM_SECRET = _clean_env(os.getenv("CLICKPESA_CHECKSUM_SECRET") or "")
CLICKPESA_WEBHOOK_SECRET = _clean_env(os.getenv("CLICKPESA_WEBHOOK_SECRET") or "")
# Durée de validité du token ClickPesa et marge de rafraîchissement (secondes)
CLICKPESA_TOKEN_TTL_SECONDS = int(os.getenv("CLICKPESA_TOKEN_TTL_SECONDS", "3600"))
TOKEN_REFRESH_MARGIN_SECONDS = int(os.getenv("TOKEN_REFRESH_MARGIN_SECONDS", "300"))

# Flutterwave (charge mobile money + lien de paiement)
FLUTTERWAVE_BASE_URL = _clean_env(os.getenv("FLUTTERWAVE_BASE_URL") or "https://api.flutterwave.com/v3").rstrip("/")
FLUTTERWAVE_SECRET_KEY = _clean_env(os.getenv("FLUTTERWAVE_SECRET_KEY") or "")
FLUTTERWAVE_WEBHOOK_SECRET = _clean_env(os.getenv("FLUTTERWAVE_WEBHOOK_SECRET") or "")

PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "15"))
DEFAULT_CURRENCY = _clean_env(os.getenv("DEFAULT_CURRENCY") or "TZS")

# Tarification
TAX_RATE = Decimal(os.getenv("TAX_RATE", "0.18"))
SHIPPING_BASE_FEE = Decimal(os.getenv("SHIPPING_BASE_FEE", "5000"))
SHIPPING_REGION_MULTIPLIERS = _json_env("SHIPPING_REGION_MULTIPLIERS", {
    "Dar es Salaam": 0.8,
    "Morogoro": 1.2,
    "Coastal": 1.2,
    "Northern": 1.5,
})
COUPON_RATES = _json_env("COUPON_RATES", {
    "SAVE10": 0.10,
    "SAVE20": 0.20,
    "WELCOME": 0.05,
})

# Réconciliation
DEFAULT_COMMISSION_RATE = Decimal(os.getenv("DEFAULT_COMMISSION_RATE", "0.05"))
AMOUNT_TOLERANCE = Decimal(os.getenv("AMOUNT_TOLERANCE", "1"))
SUBSCRIPTION_VALIDITY_DAYS = int(os.getenv("SUBSCRIPTION_VALIDITY_DAYS", "30"))
RECEIPT_EMAIL_URL = _clean_env(
    os.getenv("RECEIPT_EMAIL_URL") or (f"{SUPABASE_URL}/functions/v1/payment-receipt-email" if SUPABASE_URL else "")
)

# Retraits vendeurs (payouts)
WITHDRAWAL_FEE_RATE = Decimal(os.getenv("WITHDRAWAL_FEE_RATE", "0.02"))
PAYOUT_PROVIDER = _clean_env(os.getenv("PAYOUT_PROVIDER") or "clickpesa")
WITHDRAWAL_NOTIFICATION_URL = _clean_env(
    os.getenv("WITHDRAWAL_NOTIFICATION_URL")
    or (f"{SUPABASE_URL}/functions/v1/withdrawal-notification" if SUPABASE_URL else "")
)

# Poller de statut (fallback sans webhook)
POLL_MAX_ATTEMPTS = int(os.getenv("POLL_MAX_ATTEMPTS", "10"))
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "5"))

BASE_URL = _clean_env(os.getenv("BASE_URL") or "http://localhost:8000")
