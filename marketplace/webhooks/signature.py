"""Signature HMAC-SHA256 (hex) du corps brut des webhooks."""
from typing import Optional
import hashlib
import hmac


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    # Comparaison en temps constant, insensible à la casse de l'hexadécimal
    if not signature:
        return False
    expected = compute_signature(secret, body)
    return hmac.compare_digest(expected.lower(), signature.strip().lower())
