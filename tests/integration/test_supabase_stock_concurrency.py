"""
Réservations concurrentes contre la vraie fonction SQL reserve_stock.

Nécessite une base Supabase de test avec les migrations appliquées:
SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY et SUPABASE_TEST_PRODUCT_ID (produit jetable,
son stock est réécrit à 10 pendant le test). Ignoré sinon.
"""
import os
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from dotenv import load_dotenv

# Charger le .env depuis la racine
BASE_DIR = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
ENV_PATH = os.path.join(BASE_DIR, ".env")
load_dotenv(dotenv_path=ENV_PATH)

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_SERVICE_KEY")
PRODUCT_ID = os.getenv("SUPABASE_TEST_PRODUCT_ID")

pytestmark = [
    pytest.mark.supabase,
    pytest.mark.skipif(
        not (SUPABASE_URL and SUPABASE_SERVICE_KEY and PRODUCT_ID),
        reason="SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY et SUPABASE_TEST_PRODUCT_ID requis",
    ),
]

ROUNDS = 5


@pytest.fixture
def db():
    from marketplace.infra.supabase_client import get_service_supabase
    return get_service_supabase()


@pytest.fixture
def product(db):
    original = db.table("products").select("stock, reserved").eq("id", PRODUCT_ID).limit(1).execute().data
    if not original:
        pytest.skip(f"Produit de test {PRODUCT_ID} introuvable")
    yield PRODUCT_ID
    db.table("products").update(original[0]).eq("id", PRODUCT_ID).execute()


def _reset(db, stock=10):
    db.table("products").update({"stock": stock, "reserved": 0}).eq("id", PRODUCT_ID).execute()


def _read(db):
    return db.table("products").select("stock, reserved").eq("id", PRODUCT_ID).limit(1).execute().data[0]


def test_concurrent_reservations_never_oversell(db, product):
    from marketplace.orders import repository as orders_repo

    for _ in range(ROUNDS):
        _reset(db)
        barrier = threading.Barrier(2)

        def reserve(quantity):
            barrier.wait()
            return orders_repo.reserve_stock([{"product_id": product, "quantity": quantity}])

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(reserve, [7, 5]))

        winners = [q for q, r in zip([7, 5], results) if r.get("ok")]
        losers = [r for r in results if not r.get("ok")]
        assert len(winners) == 1, results
        assert losers[0]["reason"] == "insufficient"

        row = _read(db)
        assert row["stock"] == 10
        assert row["reserved"] == winners[0]
        orders_repo.release_stock([{"product_id": product, "quantity": winners[0]}])
        assert _read(db)["reserved"] == 0
