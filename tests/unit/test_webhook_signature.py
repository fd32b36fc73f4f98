import hashlib
import hmac

from marketplace.webhooks.signature import compute_signature, verify_signature

BODY = b'{"reference":"REF-1","status":"COMPLETED","amount":5000}'


def test_compute_signature_is_hex_hmac_sha256():
    expected = hmac.new(b"secret", BODY, hashlib.sha256).hexdigest()
    assert compute_signature("secret", BODY) == expected


def test_verify_signature_accepts_matching_digest():
    signature = compute_signature("secret", BODY)
    assert verify_signature(BODY, signature, "secret") is True
    # L'hexadécimal peut arriver en majuscules
    assert verify_signature(BODY, signature.upper(), "secret") is True


def test_verify_signature_rejects_tampering():
    signature = compute_signature("secret", BODY)
    assert verify_signature(BODY.replace(b"5000", b"1"), signature, "secret") is False
    assert verify_signature(BODY, signature, "other-secret") is False
    assert verify_signature(BODY, None, "secret") is False
    assert verify_signature(BODY, "", "secret") is False
