"""
Validation du panier contre le catalogue (lecture seule).

- validate_cart: collecte TOUTES les erreurs de toutes les lignes (pas de fail-fast)
- verify_product_prices: signale chaque ligne dont le prix client diffère du prix catalogue
Le stock disponible est toujours `stock - reserved`, jamais le stock brut.
"""
from typing import Any, Dict, List, Optional

from marketplace.checkout import repository
from marketplace.checkout.models import CartValidation, PriceMismatch, PriceVerification
from marketplace.checkout.pricing import to_decimal


def available_stock(product: Dict[str, Any]) -> int:
    return int(product.get("stock") or 0) - int(product.get("reserved") or 0)


def _lines(items: Optional[List[Any]]) -> List[Dict[str, Any]]:
    return [it if isinstance(it, dict) else it.model_dump() for it in (items or [])]


def _load_products(lines: List[Dict[str, Any]], products: Optional[Dict[str, Dict[str, Any]]]) -> Dict[str, Dict[str, Any]]:
    if products is not None:
        return products
    ids = sorted({str(line.get("product_id")) for line in lines if line.get("product_id")})
    return repository.fetch_products_by_ids(ids) if ids else {}


def validate_cart(items: Optional[List[Any]], products: Optional[Dict[str, Dict[str, Any]]] = None) -> CartValidation:
    lines = _lines(items)
    if not lines:
        return CartValidation(valid=False, errors=["Cart is empty"])

    products = _load_products(lines, products)
    errors: List[str] = []
    for line in lines:
        product_id = str(line.get("product_id") or "")
        product = products.get(product_id)
        if not product:
            errors.append(f"Product {product_id} not found")
            continue

        name = product.get("name") or product_id
        quantity = int(line.get("quantity") or 0)
        if not product.get("is_active", True):
            errors.append(f"Product {name} is no longer available")
        if quantity <= 0:
            errors.append(f"Invalid quantity for product {name}")
        else:
            available = available_stock(product)
            if quantity > available:
                errors.append(f"Insufficient stock for {name}. Available: {max(available, 0)}, Requested: {quantity}")
        if to_decimal(line.get("unit_price", line.get("price"))) <= 0:
            errors.append(f"Invalid price for product {name}")

    return CartValidation(valid=not errors, errors=errors)


def verify_product_prices(items: Optional[List[Any]], products: Optional[Dict[str, Dict[str, Any]]] = None) -> PriceVerification:
    lines = _lines(items)
    products = _load_products(lines, products)
    mismatches: List[PriceMismatch] = []
    for line in lines:
        product_id = str(line.get("product_id") or "")
        product = products.get(product_id)
        if not product:
            # Produit inconnu: déjà signalé par validate_cart
            continue
        client_price = to_decimal(line.get("unit_price", line.get("price")))
        server_price = to_decimal(product.get("price"))
        if client_price != server_price:
            mismatches.append(PriceMismatch(
                product_id=product_id,
                name=product.get("name") or product_id,
                client_price=client_price,
                server_price=server_price,
            ))
    return PriceVerification(valid=not mismatches, mismatches=mismatches)
