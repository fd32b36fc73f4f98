import json
from decimal import Decimal

import httpx
import pytest

from marketplace.errors import InsufficientBalance, ValidationFailed
from marketplace.notifications import withdrawals as withdrawal_notifications
from marketplace.payouts import service as payouts_service
from marketplace.payouts.models import (
    SellerBalance,
    WithdrawalRequest,
    WithdrawalStatus,
    translate_payout_status,
    withdrawal_sources,
)

SELLER = "seller-1"


def _request(**overrides):
    data = {"amount": 10000, "phoneNumber": "+255712345678", "paymentMethod": "mpesa"}
    data.update(overrides)
    return WithdrawalRequest(**data)


@pytest.fixture
def funded(store):
    store.credit_seller(SELLER, Decimal("15000"))
    return store


def test_fee_is_two_percent_rounded():
    assert payouts_service.withdrawal_fee(Decimal("10000")) == Decimal("200.00")
    assert payouts_service.withdrawal_fee(Decimal("1234.56")) == Decimal("24.69")


def test_balance_counts_completed_earnings_minus_withdrawals(funded):
    funded.credit_seller(SELLER, Decimal("5000"), status="pending")
    funded.add_withdrawal(SELLER, 3000, status="completed")
    funded.add_withdrawal(SELLER, 2000, status="processing")
    funded.add_withdrawal(SELLER, 4000, status="failed")

    balance = payouts_service.get_balance(SELLER)

    assert balance.total_earnings == Decimal("15000")
    assert balance.total_withdrawn == Decimal("3000")
    assert balance.pending_withdrawals == Decimal("2000")
    assert balance.available_balance == Decimal("10000")


def test_balance_of_unknown_seller_is_zero():
    assert SellerBalance.from_row(None).available_balance == Decimal("0")


def test_withdrawal_is_disbursed_net_of_fee(funded, clickpesa, clickpesa_stub):
    result = payouts_service.request_withdrawal(SELLER, _request())

    assert result["amount"] == "10000.00"
    assert result["fee"] == "200.00"
    assert result["net_amount"] == "9800.00"
    assert result["status"] == "processing"
    stored = funded.withdrawals[result["id"]]
    assert stored["status"] == "processing"
    assert stored["provider_reference"] == "CPP-1"
    assert stored["phone_number"] == "255712345678"
    assert stored["payment_method"] == "MPESA"

    body = json.loads(clickpesa_stub.calls("POST", "/payouts/create-mobile-money-payout")[0].content)
    assert body["amount"] == 9800
    assert body["orderReference"] == result["id"]
    assert payouts_service.get_balance(SELLER).available_balance == Decimal("5000")


def test_insufficient_balance_creates_nothing(funded, clickpesa, clickpesa_stub):
    with pytest.raises(InsufficientBalance) as exc:
        payouts_service.request_withdrawal(SELLER, _request(amount=20000))

    assert exc.value.status_code == 400
    assert exc.value.available_balance == Decimal("15000")
    assert exc.value.to_dict()["available_balance"] == "15000"
    assert funded.withdrawals == {}
    assert clickpesa_stub.requests == []


def test_in_flight_withdrawals_reduce_available_balance(funded, clickpesa):
    payouts_service.request_withdrawal(SELLER, _request(amount=10000))
    with pytest.raises(InsufficientBalance):
        payouts_service.request_withdrawal(SELLER, _request(amount=6000))


@pytest.mark.parametrize("overrides, message", [
    ({"amount": 0}, "Invalid amount"),
    ({"amount": -5}, "Invalid amount"),
    ({"amount": "abc"}, "Invalid amount"),
    ({"phoneNumber": ""}, "Phone number is required"),
    ({"phoneNumber": None}, "Phone number is required"),
])
def test_invalid_request(funded, clickpesa, clickpesa_stub, overrides, message):
    with pytest.raises(ValidationFailed) as exc:
        payouts_service.request_withdrawal(SELLER, _request(**overrides))
    assert exc.value.message == message
    assert funded.withdrawals == {}
    assert clickpesa_stub.requests == []


def test_invalid_phone_and_network(funded, clickpesa):
    with pytest.raises(ValidationFailed):
        payouts_service.request_withdrawal(SELLER, _request(phoneNumber="0712345678"))
    with pytest.raises(ValidationFailed):
        payouts_service.request_withdrawal(SELLER, _request(paymentMethod="paypal"))


def test_rejected_disbursement_fails_withdrawal(funded, clickpesa, clickpesa_stub):
    clickpesa_stub.routes[("POST", "/payouts/create-mobile-money-payout")] = (400, {"message": "Invalid wallet"})

    with pytest.raises(ValidationFailed) as exc:
        payouts_service.request_withdrawal(SELLER, _request())

    assert exc.value.message == "Payment processing failed"
    assert exc.value.code == "payout_rejected"
    [stored] = funded.withdrawals.values()
    assert stored["status"] == "failed"
    assert stored["error_message"] == "Invalid wallet"
    # Un retrait échoué rend le montant au solde
    assert payouts_service.get_balance(SELLER).available_balance == Decimal("15000")


def test_disbursement_without_reference_fails_withdrawal(funded, clickpesa, clickpesa_stub):
    clickpesa_stub.routes[("POST", "/payouts/create-mobile-money-payout")] = {"status": "FAILED", "message": "Declined"}

    with pytest.raises(ValidationFailed):
        payouts_service.request_withdrawal(SELLER, _request())
    [stored] = funded.withdrawals.values()
    assert stored["status"] == "failed"
    assert stored["error_message"] == "Declined"


def test_unreachable_provider_leaves_withdrawal_for_manual_processing(funded, clickpesa, clickpesa_stub):
    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    clickpesa_stub.routes[("POST", "/payouts/create-mobile-money-payout")] = unreachable

    result = payouts_service.request_withdrawal(SELLER, _request())

    assert result["status"] == "processing"
    stored = funded.withdrawals[result["id"]]
    assert stored["status"] == "processing"
    assert stored["provider_reference"] is None


def test_payout_status_vocabulary():
    assert translate_payout_status("INITIATED") is WithdrawalStatus.PROCESSING
    assert translate_payout_status("completed") is WithdrawalStatus.COMPLETED
    assert translate_payout_status("REVERSED") is WithdrawalStatus.REVERSED
    assert translate_payout_status("SOMETHING_NEW") is WithdrawalStatus.PROCESSING


def test_completed_withdrawal_is_final():
    for status in WithdrawalStatus:
        assert "completed" not in withdrawal_sources(status)
    assert withdrawal_sources("pending") == []


def test_withdrawal_notification_posts_to_function(monkeypatch):
    monkeypatch.setattr("marketplace.config.WITHDRAWAL_NOTIFICATION_URL", "https://db.test/functions/v1/withdrawal-notification")
    monkeypatch.setattr("marketplace.config.SUPABASE_SERVICE_KEY", "service-key")
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    assert withdrawal_notifications.send_withdrawal_notification("wd-1", SELLER, "completed", 10000, client=client) is True
    assert json.loads(seen[0].content) == {
        "withdrawal_id": "wd-1",
        "seller_id": SELLER,
        "status": "completed",
        "amount": 10000,
        "message": None,
    }
    assert seen[0].headers["Authorization"] == "Bearer service-key"

    failing = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    assert withdrawal_notifications.send_withdrawal_notification("wd-1", SELLER, "failed", 10000, client=failing) is False
