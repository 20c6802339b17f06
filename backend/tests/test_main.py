from fastapi.testclient import TestClient

from nudgely.main import app


def test_health_check():
    response = TestClient(app).get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "app": "Nudgely"}


def test_api_routes_are_mounted():
    paths = set(app.openapi()["paths"])

    assert "/api/cron/send-nudges" in paths
    assert "/api/complete/{token}" in paths
    assert "/api/nudges/{slug}/schedule" in paths
    assert "/api/nudges/{slug}/disable" in paths
    assert "/api/templates" in paths
