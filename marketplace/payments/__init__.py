"""
Microservice Payments (façade publique).
Expose l'adaptateur fournisseur, la vérification active et le poller.
"""
from .models import GatewayResult, PaymentRequest, PaymentStatus
from .poller import PollState, StatusPoller
from .providers import get_provider
from .service import check_status, handle_action

__all__ = [
    "GatewayResult",
    "PaymentRequest",
    "PaymentStatus",
    "PollState",
    "StatusPoller",
    "get_provider",
    "check_status",
    "handle_action",
]
