def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert r.json["database"] == "ok"


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200


def test_login_logout_and_me(client):
    r = client.get("/auth/me")
    assert r.status_code == 401

    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "wrong"})
    assert r.status_code == 401

    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 200
    assert r.json["user"]["role"] == "admin"

    r = client.get("/auth/me")
    assert r.status_code == 200
    assert r.json["user"]["email"] == "admin@example.com"

    r = client.post("/auth/logout")
    assert r.status_code == 200
    assert client.get("/auth/me").status_code == 401


def test_api_requires_login(client):
    r = client.get("/api/documents")
    assert r.status_code == 401
    assert r.json["ok"] is False
