from datetime import datetime

import pytest

from security.lockout_engine import Outcome
from security.services import get_security_services

from conftest import TEST_PASSWORD

LOCKED = "192.0.2.44"


@pytest.fixture
def admin_client(client, services, make_user):
    make_user("root", roles=("administrator",))
    resp = client.post("/auth/login", json={"username": "root", "password": TEST_PASSWORD})
    assert resp.status_code == 200
    return client


def _lock(services, address=LOCKED):
    now = datetime.utcnow()
    for _ in range(services.config.max_attempts):
        services.engine.report_outcome(address, "mallory", Outcome.FAILURE, now)


def test_requires_login(client, services):
    assert client.get("/admin/security/lockouts").status_code == 401


def test_requires_administrator(client, services, make_user):
    make_user("writer", roles=("author",))
    client.post("/auth/login", json={"username": "writer", "password": TEST_PASSWORD})
    assert client.get("/admin/security/lockouts").status_code == 403
    assert client.put("/admin/security/settings", json={"max_attempts": 1}).status_code == 403


def test_list_and_unlock(admin_client, services):
    _lock(services)

    listed = admin_client.get("/admin/security/lockouts").get_json()["lockouts"]
    assert [entry["address"] for entry in listed] == [LOCKED]
    assert listed[0]["escalation_level"] == 1

    resp = admin_client.delete(f"/admin/security/lockouts/{LOCKED}")
    assert resp.status_code == 200
    assert resp.get_json()["lockout"]["escalation_level"] == 0
    assert admin_client.get("/admin/security/lockouts").get_json()["lockouts"] == []
    assert services.engine.check_admission(LOCKED, datetime.utcnow()).allowed


def test_unlock_unknown_address(admin_client):
    assert admin_client.delete("/admin/security/lockouts/203.0.113.9").status_code == 404


def test_ipv6_address_in_path(admin_client, services):
    _lock(services, "2001:db8::7")
    assert admin_client.delete("/admin/security/lockouts/2001:db8::7").status_code == 200


def test_recent_attempts(admin_client, services):
    _lock(services)
    attempts = admin_client.get("/admin/security/attempts?limit=2").get_json()["attempts"]
    assert len(attempts) == 2
    assert attempts[0]["address"] == LOCKED
    assert attempts[0]["outcome"] == "failure"


def test_inspect_address(admin_client, services):
    _lock(services)
    info = admin_client.get(f"/admin/security/addresses/{LOCKED}").get_json()
    assert info["locked"] is True
    assert info["state"]["escalation_level"] == 1


def test_read_and_update_settings(admin_client):
    current = admin_client.get("/admin/security/settings").get_json()
    assert current["max_attempts"] == 5

    resp = admin_client.put("/admin/security/settings", json={
        "max_attempts": 3,
        "ip_blacklist": ["198.51.100.0/24"],
        "notify_on": {"success": True},
    })
    assert resp.status_code == 200
    saved = resp.get_json()["settings"]
    assert saved["max_attempts"] == 3
    assert saved["lockout_duration_minutes"] == 30
    assert saved["notify_on"] == {"success": True, "failure": True, "lockout": True}

    services = get_security_services()
    assert services.config.max_attempts == 3
    assert not services.engine.check_admission("198.51.100.9", datetime.utcnow()).allowed


def test_invalid_settings_are_rejected(admin_client):
    resp = admin_client.put("/admin/security/settings", json={"max_attempts": 0, "ip_whitelist": ["nope"]})
    assert resp.status_code == 400
    assert len(resp.get_json()["details"]) == 2
    assert get_security_services().config.max_attempts == 5

    assert admin_client.put("/admin/security/settings", json=[1, 2]).status_code == 400
