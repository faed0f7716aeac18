import json
from pathlib import Path

from payflow.main import app


def test_openapi_paths_snapshot():
    snapshot_path = Path(__file__).parent / "snapshots" / "openapi_paths_snapshot.json"
    expected_paths = json.loads(snapshot_path.read_text(encoding="utf-8"))
    actual_paths = sorted(app.openapi()["paths"].keys())
    assert actual_paths == expected_paths


def test_openapi_documents_error_envelope_for_checkout_routes():
    schema = app.openapi()
    complete = schema["paths"]["/checkout/sessions/{session_id}/complete"]["post"]
    assert {"404", "409", "410"} <= set(complete["responses"])
    webhook = schema["paths"]["/payment-webhooks/{tenant_id}/{provider}"]["post"]
    assert "401" in webhook["responses"]
