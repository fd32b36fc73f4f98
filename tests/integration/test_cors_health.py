def test_preflight_allowed_origin(client):
    r = client.options("/api/v1/checkout", headers={
        "Origin": "http://localhost:5173",
        "Access-Control-Request-Method": "POST",
    })

    assert r.status_code == 204
    assert r.headers["access-control-allow-origin"] == "http://localhost:5173"
    assert r.headers["access-control-allow-methods"] == "GET, POST, OPTIONS"
    assert "authorization" in r.headers["access-control-allow-headers"]
    assert r.headers["access-control-max-age"] == "86400"


def test_unknown_origin_gets_canonical_origin(client):
    r = client.options("/api/v1/payments/clickpesa", headers={"Origin": "https://evil.example"})

    assert r.status_code == 204
    assert r.headers["access-control-allow-origin"] == "https://www.blinno.app"
    assert r.headers["access-control-allow-origin"] != "*"


def test_cors_headers_on_error_responses(client, store):
    r = client.post("/api/v1/webhooks/paypal", json={}, headers={"Origin": "https://blinno.app"})

    assert r.status_code == 404
    assert r.headers["access-control-allow-origin"] == "https://blinno.app"


def test_health(client):
    r = client.get("/health")

    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["rate_limit"]["enabled"] is False
    assert r.headers["x-content-type-options"] == "nosniff"
    assert r.headers["x-frame-options"] == "DENY"


def test_health_supabase(client, monkeypatch):
    monkeypatch.setattr("marketplace.health.service.health_supabase_info", lambda: {"connect_ok": True, "tables": {}})
    assert client.get("/health/supabase").status_code == 200

    monkeypatch.setattr("marketplace.health.service.health_supabase_info", lambda: {"connect_ok": False, "error": "dns"})
    r = client.get("/health/supabase")
    assert r.status_code == 503
    assert r.json()["error"] == "dns"
