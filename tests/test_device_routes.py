from config import settings
from connectivity import DIAGNOSTIC_HINTS
from database import SessionLocal
from models import Alert, DeviceType, NotificationLog


def test_diagnostics_for_never_connected_device(seed, client):
    response = client.get(f"/api/v1/devices/{seed.device_id}/ping")

    assert response.status_code == 200
    body = response.json()
    assert body["device"]["serial_number"] == "WAT-001"
    assert body["connectivity"]["status"] == "never_connected"
    assert body["connectivity"]["last_seen_at"] is None
    assert body["connectivity"]["diagnostic_hints"] == list(DIAGNOSTIC_HINTS)
    assert body["device_type"]["type_code"] == "WAT"
    assert body["tenant"]["name"] == "Acme Water"
    assert body["recent_readings"] == []
    assert body["last_message"] is None
    assert body["diagnostics"] == {
        "supported_actions": ["wait_for_next_checkin"],
        "can_send_command": False,
        "recommendation": "Verify device installation and connectivity.",
    }


def test_diagnostics_after_ingest(seed, client):
    client.get("/api/ingest?serial=WAT-001&W=55&WP=30")

    body = client.get(f"/api/v1/devices/{seed.device_id}/ping").json()

    assert body["connectivity"]["status"] == "online"
    assert body["connectivity"]["diagnostic_hints"] == []
    assert {r["variable"] for r in body["recent_readings"]} == {"W", "WP"}
    assert body["last_message"]["parse_status"] == "parsed"


def test_unknown_device(seed, client):
    response = client.get("/api/v1/devices/999/ping")

    assert response.status_code == 404
    assert response.json() == {"error": "Device not found"}


def test_log_issue_creates_manual_alert(seed, client):
    response = client.post(f"/api/v1/devices/{seed.device_id}/ping", json={"action": "log_issue", "notes": "No signal"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    with SessionLocal() as db:
        alert = db.get(Alert, body["alert_id"])
    assert alert.source == "manual"
    assert alert.variable_code == "CONNECTIVITY"
    assert alert.message == "No signal"


def test_sms_ping_requires_sms_device(seed, client):
    response = client.post(f"/api/v1/devices/{seed.device_id}/ping", json={"action": "send_sms_ping"})

    assert response.status_code == 400
    assert response.json() == {"error": "Device does not support SMS commands"}


def test_sms_ping_is_queued(seed, client):
    with SessionLocal() as db:
        db.get(DeviceType, seed.device_type_id).communication_protocol = "sms"
        db.commit()

    response = client.post(f"/api/v1/devices/{seed.device_id}/ping", json={"action": "send_sms_ping"})

    assert response.status_code == 200
    with SessionLocal() as db:
        [log] = db.query(NotificationLog).all()
    assert log.status == "queued"
    assert log.channel == "sms"


def test_unknown_action(seed, client):
    response = client.post(f"/api/v1/devices/{seed.device_id}/ping", json={"action": "reboot_everything"})

    assert response.status_code == 400
    assert response.json() == {"error": "Unknown action: reboot_everything"}


def test_connectivity_and_health(seed, client):
    client.get("/api/ingest?serial=WAT-001&W=55")

    connectivity = client.get(f"/api/v1/devices/{seed.device_id}/connectivity").json()
    health = client.get(f"/api/v1/devices/{seed.device_id}/health").json()

    assert connectivity["status"] == "online"
    assert health["score"] == 100
    assert health["status"] == "healthy"
    assert health["inputs"]["recent_alerts"] == 0


def test_readings_filter(seed, client):
    client.get("/api/ingest?serial=WAT-001&W=55&WP=30")
    client.get("/api/ingest?serial=WAT-001&W=56")

    body = client.get(f"/api/v1/devices/{seed.device_id}/readings?variable=w").json()

    assert body["count"] == 2
    assert [r["value"] for r in body["readings"]] == [56.0, 55.0]


def test_operator_key_required_when_configured(seed, client, monkeypatch):
    monkeypatch.setattr(settings, "operator_api_key", "s3cret")

    denied = client.get(f"/api/v1/devices/{seed.device_id}/ping")
    allowed = client.get(f"/api/v1/devices/{seed.device_id}/ping", headers={"X-Operator-Key": "s3cret"})

    assert denied.status_code == 401
    assert denied.json() == {"error": "Unauthorized"}
    assert allowed.status_code == 200


def test_alert_lifecycle_over_api(seed, client):
    client.get("/api/ingest?serial=WAT-001&W=15")
    [alert] = client.get("/api/v1/alerts?status=open").json()

    acknowledged = client.patch(f"/api/v1/alerts/{alert['id']}", json={"status": "acknowledged"})
    reopened = client.patch(f"/api/v1/alerts/{alert['id']}", json={"status": "open"})

    assert acknowledged.status_code == 200
    assert acknowledged.json()["status"] == "acknowledged"
    assert reopened.status_code == 400
    assert reopened.json() == {"error": "Cannot change alert from acknowledged to open"}


def test_alert_rule_validation(seed, client):
    response = client.post("/api/v1/alerts/rules", json={
        "rule_name": "Level band",
        "device_type_id": seed.device_type_id,
        "variable_code": "w",
        "operator": "between",
        "threshold1": 10,
    })

    assert response.status_code == 400
    assert response.json() == {"error": "Operator between requires threshold2"}


def test_alert_rule_update_rejects_clearing_required_fields(seed, client):
    url = f"/api/v1/alerts/rules/{seed.rule_id}"

    cleared = client.put(url, json={"threshold1": None})
    renamed = client.put(url, json={"rule_name": "Very low water", "threshold2": None})

    assert cleared.status_code == 400
    assert cleared.json() == {"error": "threshold1 cannot be null"}
    assert renamed.status_code == 200
    assert renamed.json()["rule_name"] == "Very low water"
    assert renamed.json()["threshold1"] == 20


def test_alert_rule_create(seed, client):
    response = client.post("/api/v1/alerts/rules", json={
        "rule_name": "High pressure",
        "device_type_id": seed.device_type_id,
        "variable_code": "wp",
        "operator": "gt",
        "threshold1": 90,
        "severity": "critical",
    })

    assert response.status_code == 201
    rule = response.json()
    assert rule["variable_code"] == "WP"
    assert rule["message_template"] == "Alert: WP triggered High pressure"

    client.get("/api/ingest?serial=WAT-001&WP=95")
    [alert] = client.get("/api/v1/alerts?severity=critical").json()
    assert alert["rule_id"] == rule["id"]


def test_messages_audit_log(seed, client):
    client.get("/api/ingest?serial=WAT-001&W=55")
    client.get("/api/ingest?serial=GHOST-1&W=55")

    failed = client.get("/api/v1/messages?status=failed").json()
    message_id = failed["messages"][0]["id"]
    detail = client.get(f"/api/v1/messages/{message_id}").json()

    assert failed["count"] == 1
    assert detail["parse_error"] == "Device not found: GHOST-1"
    assert detail["readings"] == []


def test_fleet_stats_and_device_check(seed, client, monkeypatch):
    client.get("/api/ingest?serial=WAT-001&W=55")

    stats = client.get("/api/v1/health/devices/stats").json()
    assert stats == {"total": 1, "online": 1, "offline": 0, "never_connected": 0}

    monkeypatch.setattr(settings, "cron_secret", "tick")
    assert client.get("/api/v1/health/device-check").status_code == 401
    check = client.get("/api/v1/health/device-check?send_alerts=false", headers={"X-Cron-Secret": "tick"})
    assert check.status_code == 200
    assert check.json()["flagged"] == 0


def test_service_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
