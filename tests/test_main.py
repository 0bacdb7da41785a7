from fastapi.testclient import TestClient

from app.main import app

client = TestClient(app)


def test_root_reports_success():
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"success": True}


def test_list_methods_needs_no_database():
    response = client.get("/api/v1/normalization/methods")
    assert response.status_code == 200
    values = [option["value"] for option in response.json()]
    assert values == ["z_score", "percentile", "modified_z", "equating", "raw", "custom"]
