"""
Registre des fournisseurs de paiement.

Les instances sont créées à la demande puis réutilisées (le cache de jeton ClickPesa
vit le temps du processus). Les tests injectent leurs propres instances via register_provider.
"""
from typing import Callable, Dict

from marketplace.errors import NotFound
from marketplace.payments.providers.base import PaymentProvider, ProviderError, ProviderRejected, TokenCache
from marketplace.payments.providers.clickpesa import ClickPesaProvider
from marketplace.payments.providers.flutterwave import FlutterwaveProvider

_FACTORIES: Dict[str, Callable[[], PaymentProvider]] = {
    "clickpesa": ClickPesaProvider,
    "flutterwave": FlutterwaveProvider,
}
_INSTANCES: Dict[str, PaymentProvider] = {}


def get_provider(name: str) -> PaymentProvider:
    key = (name or "").strip().lower()
    if key not in _INSTANCES:
        factory = _FACTORIES.get(key)
        if factory is None:
            raise NotFound(f"Unknown payment provider: {name}")
        _INSTANCES[key] = factory()
    return _INSTANCES[key]


def register_provider(name: str, provider: PaymentProvider) -> None:
    _INSTANCES[name.strip().lower()] = provider


def reset_providers() -> None:
    for provider in _INSTANCES.values():
        provider.close()
    _INSTANCES.clear()


__all__ = [
    "PaymentProvider",
    "ProviderError",
    "ProviderRejected",
    "TokenCache",
    "ClickPesaProvider",
    "FlutterwaveProvider",
    "get_provider",
    "register_provider",
    "reset_providers",
]
