"""Tests for the FastAPI endpoints."""
import importlib
import logging

from fastapi.testclient import TestClient

from bill_api.config import Settings
from bill_api.errors import DownloadError
from bill_api.main import create_app
from bill_api.normalizer import normalize_extraction
from bill_api.schemas import TokenUsage

ZERO_USAGE = {"total_tokens": 0, "input_tokens": 0, "output_tokens": 0}


class FakeExtractor:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.documents = []

    async def extract(self, document_url):
        self.documents.append(document_url)
        if self.error:
            raise self.error
        return self.result


def make_client(extractor):
    return TestClient(create_app(Settings(gemini_api_key="test-key"), extractor=extractor))


class TestEndpoints:
    def test_root_is_plain_text(self):
        resp = make_client(FakeExtractor()).get("/")
        assert resp.status_code == 200
        assert "text/plain" in resp.headers["content-type"]
        assert resp.text == "Bill Extraction API is running"

    def test_health_check(self):
        resp = make_client(FakeExtractor()).get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}

    def test_extract_bill_missing_document(self):
        extractor = FakeExtractor()
        resp = make_client(extractor).post("/extract-bill-data", json={})
        assert resp.status_code == 400
        assert resp.json() == {
            "is_success": False,
            "token_usage": ZERO_USAGE,
            "data": None,
            "error": "Missing 'document' URL in request body",
        }
        assert extractor.documents == []

    def test_extract_bill_empty_document(self):
        resp = make_client(FakeExtractor()).post("/extract-bill-data", json={"document": ""})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Missing 'document' URL in request body"

    def test_extract_bill_no_body(self):
        resp = make_client(FakeExtractor()).post("/extract-bill-data")
        assert resp.status_code == 400
        assert resp.json()["error"] == "Missing 'document' URL in request body"

    def test_extract_bill_non_object_body(self):
        resp = make_client(FakeExtractor()).post("/extract-bill-data", json=["https://example.com/a.png"])
        assert resp.status_code == 400
        body = resp.json()
        assert body["is_success"] is False
        assert body["data"] is None
        assert body["error"] == "Invalid request body"

    def test_extract_bill_success(self):
        usage = TokenUsage(total_tokens=12, input_tokens=10, output_tokens=2)
        raw = '{"pagewise_line_items": [{"bill_items": [{"item_name": "Bed", "item_amount": 800}]}]}'
        extractor = FakeExtractor(result=normalize_extraction(raw, usage))

        resp = make_client(extractor).post("/extract-bill-data", json={"document": "https://example.com/a.png"})

        assert resp.status_code == 200
        assert extractor.documents == ["https://example.com/a.png"]
        assert resp.json() == {
            "is_success": True,
            "token_usage": {"total_tokens": 12, "input_tokens": 10, "output_tokens": 2},
            "data": {
                "pagewise_line_items": [
                    {
                        "page_no": "1",
                        "page_type": "Bill Detail",
                        "bill_items": [
                            {"item_name": "Bed", "item_amount": 800.0, "item_rate": 0.0, "item_quantity": 0.0}
                        ],
                    }
                ],
                "total_item_count": 1,
            },
        }

    def test_success_body_is_pretty_printed(self):
        extractor = FakeExtractor(result=normalize_extraction("{}"))
        resp = make_client(extractor).post("/extract-bill-data", json={"document": "https://example.com/a.png"})
        assert resp.text.startswith('{\n  "is_success": true')

    def test_invalid_model_json_reported_in_band(self):
        extractor = FakeExtractor(result=normalize_extraction("not json"))
        resp = make_client(extractor).post("/extract-bill-data", json={"document": "https://example.com/a.png"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["is_success"] is False
        assert body["error"] == "Model returned invalid JSON"
        assert body["data"] == {"pagewise_line_items": [], "total_item_count": 0}

    def test_download_failure_returns_500(self):
        extractor = FakeExtractor(error=DownloadError(403, "Forbidden"))
        resp = make_client(extractor).post("/extract-bill-data", json={"document": "https://example.com/a.png"})
        assert resp.status_code == 500
        assert resp.json() == {
            "is_success": False,
            "token_usage": ZERO_USAGE,
            "data": None,
            "error": "Internal server error",
        }

    def test_unexpected_error_does_not_leak_details(self):
        extractor = FakeExtractor(error=RuntimeError("secret upstream detail"))
        resp = make_client(extractor).post("/extract-bill-data", json={"document": "https://example.com/a.png"})
        assert resp.status_code == 500
        assert "secret upstream detail" not in resp.text
        assert resp.json()["error"] == "Internal server error"

    def test_handler_error_logged_server_side(self, caplog):
        extractor = FakeExtractor(error=RuntimeError("secret upstream detail"))
        with caplog.at_level(logging.ERROR, logger="bill_api.main"):
            resp = make_client(extractor).post("/extract-bill-data", json={"document": "https://example.com/a.png"})

        assert resp.status_code == 500
        errors = [r for r in caplog.records if r.name == "bill_api.main" and r.levelno == logging.ERROR]
        assert any("secret upstream detail" in r.getMessage() for r in errors)
        assert any(r.exc_info for r in errors)

    def test_error_outside_route_try_uses_universal_handler(self, caplog):
        # A None result fails after the extraction call, outside the route's own try block
        app = create_app(Settings(gemini_api_key="test-key"), extractor=FakeExtractor(result=None))
        client = TestClient(app, raise_server_exceptions=False)

        with caplog.at_level(logging.ERROR, logger="bill_api.main"):
            resp = client.post("/extract-bill-data", json={"document": "https://example.com/a.png"})

        assert resp.status_code == 500
        assert resp.json() == {
            "is_success": False,
            "token_usage": ZERO_USAGE,
            "data": None,
            "error": "Internal server error",
        }
        assert any("Unhandled error" in r.getMessage() for r in caplog.records)


class TestAppSettings:
    def test_startup_reads_settings_from_app_state(self, caplog):
        app = create_app(Settings(gemini_api_key="test-key", gemini_model="gemini-test"), extractor=FakeExtractor())
        assert app.state.settings.gemini_model == "gemini-test"

        with caplog.at_level(logging.INFO, logger="bill_api.main"):
            with TestClient(app):
                pass
        assert any("gemini-test" in r.getMessage() for r in caplog.records)

    def test_startup_logs_missing_key(self, caplog):
        app = create_app(Settings(), extractor=FakeExtractor())
        with caplog.at_level(logging.ERROR, logger="bill_api.main"):
            with TestClient(app):
                pass
        assert any("GEMINI_API_KEY not found" in r.getMessage() for r in caplog.records)

    def test_import_does_not_read_environment(self, monkeypatch):
        monkeypatch.setenv("PORT", "not-a-port")
        import bill_api.main as main

        importlib.reload(main)
        assert not hasattr(main, "app")
