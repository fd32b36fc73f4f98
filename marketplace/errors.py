"""
Erreurs métier de la marketplace.

Chaque erreur porte un message lisible, un code HTTP et un code court
(`code`) que le handler FastAPI (app_setup.exceptions) rend sous la forme
{"success": false, "error": <message>, "code": <code>}.
"""
from typing import List, Optional


class MarketplaceError(Exception):
    status_code = 500
    code = "error"

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "code": self.code}


class ValidationFailed(MarketplaceError):
    status_code = 400
    code = "validation"


class CartValidationError(ValidationFailed):
    """Panier invalide: conserve la liste complète des erreurs (pas de fail-fast)."""
    code = "cart_invalid"

    def __init__(self, errors: List[str], message: str = "Cart validation failed"):
        super().__init__(message)
        self.errors = list(errors or [])

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class NotFound(MarketplaceError):
    status_code = 404
    code = "not_found"


class Conflict(MarketplaceError):
    """Transition d'état illégale ou stock insuffisant."""
    status_code = 409
    code = "conflict"


class Unauthorized(MarketplaceError):
    status_code = 401
    code = "unauthorized"


class UpstreamError(MarketplaceError):
    """Échec d'un service tiers (fournisseur de paiement, stockage)."""
    status_code = 500
    code = "upstream"


class IntegrityMismatch(MarketplaceError):
    """Montant reçu incohérent avec la transaction enregistrée."""
    status_code = 400
    code = "amount_mismatch"


class InsufficientStock(Conflict):
    code = "insufficient_stock"

    def __init__(self, product_id: str, available: int, requested: int):
        super().__init__(
            f"Insufficient stock for product {product_id}. Available: {available}, Requested: {requested}"
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class InsufficientBalance(ValidationFailed):
    """Retrait supérieur au solde disponible du vendeur."""
    code = "insufficient_balance"

    def __init__(self, available_balance):
        super().__init__("Insufficient balance")
        self.available_balance = available_balance

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["available_balance"] = str(self.available_balance)
        return data
