import os

# Pas de Redis pendant les tests: le rate limiting FastAPILimiter n'est pas initialisé
os.environ.setdefault("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS", "1")

import copy
import itertools
import threading
import uuid
from decimal import Decimal
from typing import Any, Dict, Generator, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from marketplace.app import app as fastapi_app
from marketplace.errors import Conflict, UpstreamError
from marketplace.payments.models import transition_sources
from marketplace.payouts.models import withdrawal_sources
from marketplace.payments.providers import ClickPesaProvider, FlutterwaveProvider, register_provider, reset_providers
from marketplace.utils.security import require_user

WEBHOOK_SECRET = "whsec-test"


# Marquage automatique selon le dossier
def pytest_collection_modifyitems(config, items):
    for item in items:
        nodeid = item.nodeid.replace("\\", "/")
        if "tests/unit/" in nodeid:
            item.add_marker(pytest.mark.unit)
        elif "tests/integration/" in nodeid:
            item.add_marker(pytest.mark.integration)


class FakeStore:
    """
    Base en mémoire qui reproduit le contrat des modules repository:
    - réservation tout-ou-rien gardée par stock - reserved >= quantité
    - UPDATE conditionnels (statut de commande, statut de transaction, reservation_released)
    - upsert des gains sur order_item_id en ignorant les doublons
    Toutes les écritures passent sous un verrou, comme une transaction SQL.
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.products: Dict[str, Dict[str, Any]] = {}
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.order_items: Dict[str, Dict[str, Any]] = {}
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.earnings: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.commission_rates: Dict[str, Decimal] = {}
        self.receipts: List[Dict[str, Any]] = []
        self.withdrawals: Dict[str, Dict[str, Any]] = {}
        self.notifications: List[Dict[str, Any]] = []
        self.stock_failures = 0
        self._seq = itertools.count(1)

    # --- jeux de données ---

    def add_product(self, product_id, price, stock, reserved=0, name=None, seller_id="seller-1", is_active=True):
        self.products[product_id] = {
            "id": product_id,
            "name": name or f"Product {product_id}",
            "price": price,
            "stock": stock,
            "reserved": reserved,
            "seller_id": seller_id,
            "is_active": is_active,
        }
        return self.products[product_id]

    def add_transaction(self, reference, amount, user_id="test-user", status="pending", **extra):
        row = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "order_id": None,
            "subscription_id": None,
            "provider": "clickpesa",
            "amount": amount,
            "currency": "TZS",
            "reference": reference,
            "gateway_reference": None,
            "status": status,
            "error_message": None,
        }
        row.update(extra)
        self.transactions[reference] = row
        return row

    # --- checkout.repository ---

    def fetch_products_by_ids(self, ids):
        return {pid: copy.deepcopy(self.products[pid]) for pid in ids if pid in self.products}

    # --- orders.repository ---

    def reserve_stock(self, items):
        with self.lock:
            for it in items:
                product = self.products.get(it["product_id"])
                if product is None:
                    return {"ok": False, "reason": "not_found", "product_id": it["product_id"], "requested": it["quantity"]}
                available = product["stock"] - product["reserved"]
                if available < it["quantity"]:
                    return {
                        "ok": False,
                        "reason": "insufficient",
                        "product_id": it["product_id"],
                        "available": available,
                        "requested": it["quantity"],
                    }
            for it in items:
                self.products[it["product_id"]]["reserved"] += it["quantity"]
            return {"ok": True}

    def release_stock(self, items):
        with self.lock:
            for it in items:
                product = self.products[it["product_id"]]
                product["reserved"] = max(0, product["reserved"] - it["quantity"])

    # Fonctions SQL de transition: statut et stock sous le même verrou, tout-ou-rien

    def fail_stock_movement(self, times=1):
        """Les `times` prochaines fonctions de transition échouent avant toute écriture (rollback)."""
        self.stock_failures += times

    def _stock_rpc(self, name):
        if self.stock_failures:
            self.stock_failures -= 1
            raise UpstreamError(f"Stock operation {name} failed")

    def _stock_lines(self, order_id):
        quantities: Dict[str, int] = {}
        for it in self.order_items.values():
            if it["order_id"] == order_id:
                quantities[it["product_id"]] = quantities.get(it["product_id"], 0) + it["quantity"]
        return quantities.items()

    def _locked_order(self, order_id, allowed):
        order = self.orders.get(order_id)
        if not order:
            return None, {"ok": False, "reason": "not_found"}
        if order["status"] not in allowed:
            return None, {"ok": False, "reason": "status", "status": order["status"]}
        return order, None

    def confirm_order(self, order_id):
        with self.lock:
            order, refused = self._locked_order(order_id, ("pending",))
            if refused:
                return refused
            self._stock_rpc("confirm_order")
            for pid, qty in self._stock_lines(order_id):
                product = self.products[pid]
                product["stock"] -= qty
                product["reserved"] = max(0, product["reserved"] - qty)
            order["status"] = "confirmed"
            return {"ok": True, "previous": "pending", "status": "confirmed", "reservation_released": False}

    def cancel_order(self, order_id):
        with self.lock:
            order, refused = self._locked_order(order_id, ("pending", "confirmed"))
            if refused:
                return refused
            self._stock_rpc("cancel_order")
            previous = order["status"]
            for pid, qty in self._stock_lines(order_id):
                product = self.products[pid]
                if previous == "confirmed":
                    product["stock"] += qty
                elif not order.get("reservation_released"):
                    product["reserved"] = max(0, product["reserved"] - qty)
            if previous == "pending":
                order["reservation_released"] = True
            order["status"] = "cancelled"
            return {
                "ok": True,
                "previous": previous,
                "status": "cancelled",
                "reservation_released": bool(order.get("reservation_released")),
            }

    def release_order_reservation(self, order_id):
        with self.lock:
            order, refused = self._locked_order(order_id, ("payment_failed",))
            if refused:
                return refused
            if order.get("reservation_released"):
                return {"ok": True, "released": False}
            self._stock_rpc("release_order_reservation")
            for pid, qty in self._stock_lines(order_id):
                product = self.products[pid]
                product["reserved"] = max(0, product["reserved"] - qty)
            order["reservation_released"] = True
            return {"ok": True, "released": True}

    def insert_order(self, row):
        with self.lock:
            order = {"id": str(uuid.uuid4()), "created_at": next(self._seq), **row}
            self.orders[order["id"]] = order
            return copy.deepcopy(order)

    def insert_order_items(self, rows):
        with self.lock:
            inserted = []
            for row in rows:
                item = {"id": str(uuid.uuid4()), **row}
                self.order_items[item["id"]] = item
                inserted.append(copy.deepcopy(item))
            return inserted

    def delete_order(self, order_id):
        with self.lock:
            self.orders.pop(order_id, None)
            for item_id in [k for k, v in self.order_items.items() if v["order_id"] == order_id]:
                del self.order_items[item_id]

    def _with_items(self, order):
        data = copy.deepcopy(order)
        data["order_items"] = [copy.deepcopy(it) for it in self.order_items.values() if it["order_id"] == order["id"]]
        return data

    def get_order(self, order_id):
        order = self.orders.get(order_id)
        return self._with_items(order) if order else None

    def list_orders(self, buyer_id, limit=50):
        mine = [o for o in self.orders.values() if o["buyer_id"] == buyer_id]
        mine.sort(key=lambda o: o["created_at"], reverse=True)
        return [self._with_items(o) for o in mine[:limit]]

    def update_order_status(self, order_id, new_status, from_statuses):
        with self.lock:
            order = self.orders.get(order_id)
            if not order or order["status"] not in from_statuses:
                return None
            order["status"] = new_status
            return copy.deepcopy(order)

    # --- payments.repository ---

    def insert_transaction(self, row):
        with self.lock:
            if row["reference"] in self.transactions:
                raise Conflict(f"Payment reference {row['reference']} is already used")
            stored = {"id": str(uuid.uuid4()), "gateway_reference": None, "error_message": None, **row}
            self.transactions[row["reference"]] = stored
            return copy.deepcopy(stored)

    def get_transaction_by_reference(self, reference, user_id=None):
        row = self.transactions.get(reference)
        if not row or (user_id and row.get("user_id") != user_id):
            return None
        return copy.deepcopy(row)

    def update_transaction(self, reference, fields, only_if_status=None):
        with self.lock:
            row = self.transactions.get(reference)
            if not row or (only_if_status and row["status"] != only_if_status):
                return None
            row.update(fields)
            return copy.deepcopy(row)

    # --- reconciliation.repository ---

    def transition_transaction(self, reference, new_status, fields=None):
        with self.lock:
            row = self.transactions.get(reference)
            if not row or row["status"] not in transition_sources(new_status):
                return None
            row.update({"status": new_status, **(fields or {})})
            return copy.deepcopy(row)

    def fetch_order_items(self, order_id):
        return [copy.deepcopy(it) for it in self.order_items.values() if it["order_id"] == order_id]

    def get_seller_commission_rate(self, seller_id):
        return self.commission_rates.get(seller_id)

    def insert_earnings(self, rows):
        with self.lock:
            inserted = []
            for row in rows:
                if row["order_item_id"] in self.earnings:
                    continue
                self.earnings[row["order_item_id"]] = dict(row)
                inserted.append(dict(row))
            return inserted

    def activate_subscription(self, subscription_id, expires_at, payment_reference):
        self.subscriptions[subscription_id] = {
            "status": "active",
            "expires_at": expires_at,
            "payment_reference": payment_reference,
        }
        return True

    def send_payment_receipt(self, transaction_id, user_id, client=None):
        self.receipts.append({"transaction_id": transaction_id, "user_id": user_id})
        return True

    # --- payouts.repository ---

    def credit_seller(self, seller_id, net_amount, status="completed"):
        key = f"earning-{next(self._seq)}"
        self.earnings[key] = {"seller_id": seller_id, "order_item_id": key, "net_amount": net_amount, "status": status}

    def add_withdrawal(self, seller_id, amount, status="pending", fee=None, **extra):
        amount = Decimal(str(amount))
        fee = Decimal(str(fee)) if fee is not None else (amount * Decimal("0.02")).quantize(Decimal("0.01"))
        row = {
            "id": str(uuid.uuid4()),
            "seller_id": seller_id,
            "amount": amount,
            "fee": fee,
            "net_amount": amount - fee,
            "payment_method": "MPESA",
            "phone_number": "255712345678",
            "status": status,
            "provider_reference": None,
            "error_message": None,
            "processed_at": None,
        }
        row.update(extra)
        self.withdrawals[row["id"]] = row
        return row

    def _balance(self, seller_id):
        earned = sum(
            (Decimal(str(e["net_amount"])) for e in self.earnings.values()
             if e.get("seller_id") == seller_id and e.get("status") == "completed"),
            Decimal("0"),
        )
        mine = [w for w in self.withdrawals.values() if w["seller_id"] == seller_id]
        withdrawn = sum((Decimal(str(w["amount"])) for w in mine if w["status"] == "completed"), Decimal("0"))
        pending = sum((Decimal(str(w["amount"])) for w in mine if w["status"] in ("pending", "processing")), Decimal("0"))
        return {
            "available_balance": earned - withdrawn - pending,
            "pending_withdrawals": pending,
            "total_earnings": earned,
            "total_withdrawn": withdrawn,
        }

    def get_seller_balance(self, seller_id):
        return self._balance(seller_id)

    def request_withdrawal(self, row):
        with self.lock:
            available = self._balance(row["seller_id"])["available_balance"]
            if available < Decimal(str(row["amount"])):
                return {"ok": False, "reason": "insufficient_balance", "available_balance": available}
            stored = self.add_withdrawal(row["seller_id"], row["amount"], fee=row["fee"],
                                         payment_method=row["payment_method"], phone_number=row["phone_number"])
            return {"ok": True, "withdrawal": copy.deepcopy(stored)}

    def update_withdrawal(self, withdrawal_id, fields, only_if_status=None):
        with self.lock:
            row = self.withdrawals.get(withdrawal_id)
            if not row or (only_if_status and row["status"] != only_if_status):
                return None
            row.update(fields)
            return copy.deepcopy(row)

    def transition_withdrawal(self, withdrawal_id, new_status, fields=None):
        with self.lock:
            row = self.withdrawals.get(withdrawal_id)
            if not row or row["status"] not in withdrawal_sources(new_status):
                return None
            row.update({"status": new_status, **(fields or {})})
            return copy.deepcopy(row)

    def find_withdrawal(self, reference):
        for row in self.withdrawals.values():
            if row.get("provider_reference") == reference:
                return copy.deepcopy(row)
        row = self.withdrawals.get(reference)
        return copy.deepcopy(row) if row else None

    def list_withdrawals(self, seller_id, limit=50):
        return [copy.deepcopy(w) for w in self.withdrawals.values() if w["seller_id"] == seller_id][:limit]

    def send_withdrawal_notification(self, withdrawal_id, seller_id, status, amount, message=None, client=None):
        self.notifications.append({"withdrawal_id": withdrawal_id, "seller_id": seller_id, "status": status})
        return True


_PATCHED = {
    "marketplace.checkout.repository": ["fetch_products_by_ids"],
    "marketplace.orders.repository": [
        "reserve_stock", "release_stock", "confirm_order", "cancel_order", "release_order_reservation",
        "insert_order", "insert_order_items", "delete_order", "get_order", "list_orders", "update_order_status",
    ],
    "marketplace.payments.repository": ["insert_transaction", "get_transaction_by_reference", "update_transaction"],
    "marketplace.reconciliation.repository": [
        "transition_transaction", "fetch_order_items", "get_seller_commission_rate",
        "insert_earnings", "activate_subscription",
    ],
    "marketplace.payouts.repository": [
        "get_seller_balance", "request_withdrawal", "update_withdrawal", "transition_withdrawal",
        "find_withdrawal", "list_withdrawals",
    ],
    "marketplace.notifications.receipts": ["send_payment_receipt"],
    "marketplace.notifications.withdrawals": ["send_withdrawal_notification"],
}


@pytest.fixture
def store(monkeypatch) -> FakeStore:
    """Remplace tous les accès Supabase (et les emails transactionnels) par la base en mémoire."""
    fake = FakeStore()
    for module, names in _PATCHED.items():
        for name in names:
            monkeypatch.setattr(f"{module}.{name}", getattr(fake, name))
    return fake


@pytest.fixture(scope="session")
def app():
    return fastapi_app


@pytest.fixture()
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as c:
        yield c


# Simuler un utilisateur authentifié pour les endpoints protégés
@pytest.fixture(autouse=True)
def _override_require_user(app):
    fake_user: Dict[str, Any] = {
        "id": "test-user",
        "email": "test@example.com",
        "role": "user",
        "token": "fake-token",
    }
    app.dependency_overrides[require_user] = lambda: fake_user
    try:
        yield
    finally:
        app.dependency_overrides.pop(require_user, None)


@pytest.fixture(autouse=True)
def _reset_payment_providers():
    yield
    reset_providers()


class ProviderStub:
    """
    Faux serveur HTTP d'un fournisseur (httpx.MockTransport).
    routes: {(méthode, suffixe de chemin): réponse JSON | (code, JSON) | callable(request)}
    """

    def __init__(self, routes: Optional[Dict[Any, Any]] = None):
        self.routes = dict(routes or {})
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for (method, suffix), reply in self.routes.items():
            if request.method == method and request.url.path.endswith(suffix):
                if callable(reply):
                    reply = reply(request)
                if isinstance(reply, httpx.Response):
                    return reply
                if isinstance(reply, tuple):
                    return httpx.Response(reply[0], json=reply[1])
                return httpx.Response(200, json=reply)
        return httpx.Response(404, json={"message": "not found"})

    def calls(self, method: str, suffix: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path.endswith(suffix)]

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))


@pytest.fixture
def clickpesa_stub() -> ProviderStub:
    return ProviderStub({
        ("POST", "/generate-token"): {"success": True, "token": "Bearer tok-1"},
        ("POST", "/ussd-push/preview"): {"activeMethods": [{"name": "MPESA", "status": "AVAILABLE"}]},
        ("POST", "/ussd-push"): {"id": "CP-123", "status": "PROCESSING"},
        ("POST", "/checkout-link/generate-checkout-url"): {"checkoutLink": "https://pay.clickpesa.test/abc"},
        ("POST", "/payouts/create-mobile-money-payout"): {"id": "CPP-1", "status": "PROCESSING"},
    })


@pytest.fixture
def clickpesa(clickpesa_stub) -> ClickPesaProvider:
    provider = ClickPesaProvider(
        client=clickpesa_stub.client(),
        client_id="client-id",
        api_key="api-key",
        checksum_secret="checksum-secret",
        webhook_secret=WEBHOOK_SECRET,
        base_url="https://clickpesa.test/third-parties",
    )
    register_provider("clickpesa", provider)
    return provider


@pytest.fixture
def flutterwave_stub() -> ProviderStub:
    return ProviderStub({
        ("POST", "/charges"): {"status": "success", "data": {"id": 987, "status": "pending"}},
        ("POST", "/payments"): {"status": "success", "data": {"link": "https://checkout.flutterwave.test/xyz"}},
    })


@pytest.fixture
def flutterwave(flutterwave_stub) -> FlutterwaveProvider:
    provider = FlutterwaveProvider(
        client=flutterwave_stub.client(),
        secret_key="FLWSECK_TEST",
        webhook_secret=WEBHOOK_SECRET,
        base_url="https://flutterwave.test/v3",
    )
    register_provider("flutterwave", provider)
    return provider
