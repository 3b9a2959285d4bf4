def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.get_json() == {"status": "ok"}


def test_root(client):
    r = client.get("/")
    assert r.status_code == 200
    assert r.get_json()["status"] == "ok"


def test_unknown_record_is_404(admin_client):
    r = admin_client.get("/api/orders/999")
    assert r.status_code == 404
    assert r.get_json()["error"] == "not_found"
