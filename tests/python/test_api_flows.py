from fastapi.testclient import TestClient

from apps.api import main as api
from apps.api.services import accounts, flows, history, metrics
from apps.api.services import requests as request_tokens
from apps.api.services.llm import GenerationError
from apps.api.services.schemas import ChartSpec, FormulaResult

CSV = "region,sales\nnorth,100\nsouth,200\n"

FORMULA = FormulaResult(excelFormula="=SUM(B:B)", googleSheetsFormula="=SUM(B:B)", explanation="adds column B")


def _client():
    store = history.HistoryStore(history.MemoryBackend())
    api.app.dependency_overrides[api.get_history_store] = lambda: store
    return TestClient(api.app), store


def teardown_function():
    api.app.dependency_overrides.clear()


def test_formula_generate_ok_charges_credit_and_records_prompt(monkeypatch):
    monkeypatch.setattr(flows, "generate_formula", lambda description: FORMULA)
    client, store = _client()

    res = client.post("/api/formula/generate", json={"description": "sum column B"}, headers={"X-User-Id": "u1"})
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "ok"
    assert body["result"]["excelFormula"] == "=SUM(B:B)"
    assert accounts.get_account("u1")["credits"] == 2
    assert [it["content"] for it in store.list("u1", "prompts")] == ["sum column B"]


def test_formula_generate_out_of_credits(monkeypatch):
    monkeypatch.setattr(flows, "generate_formula", lambda description: FORMULA)
    client, _ = _client()
    accounts.deduct_credits("u1", 3)

    res = client.post("/api/formula/generate", json={"description": "sum"}, headers={"X-User-Id": "u1"})
    assert res.status_code == 402


def test_pro_user_is_not_charged(monkeypatch):
    monkeypatch.setattr(flows, "generate_formula", lambda description: FORMULA)
    client, _ = _client()
    accounts.grant_pro("u1")
    accounts.deduct_credits("u1", 3)

    res = client.post("/api/formula/generate", json={"description": "sum"}, headers={"X-User-Id": "u1"})
    assert res.status_code == 200
    assert accounts.get_account("u1")["credits"] == 0


def test_formula_generate_empty_description_is_bad_request():
    client, _ = _client()
    res = client.post("/api/formula/generate", json={"description": "  "}, headers={"X-User-Id": "u1"})
    assert res.status_code == 400
    assert accounts.get_account("u1")["credits"] == 3


def test_invalid_model_output_yields_invalid_status(monkeypatch):
    monkeypatch.setattr(flows, "generate_chart", lambda csv, request: None)
    client, _ = _client()

    res = client.post("/api/charts/generate", json={"csvData": CSV, "request": "sales by region"})
    assert res.status_code == 200
    assert res.json() == {"status": "invalid", "result": None}
    assert metrics.slo_snapshot()["events"]["ChartGenerated"]["status"] == {"invalid": 1}


def test_generation_error_is_bad_gateway_with_generic_message(monkeypatch):
    def _boom(formula, formula_type):
        raise GenerationError("provider call failed: token=abcdef123456")

    monkeypatch.setattr(flows, "explain_formula", _boom)
    client, _ = _client()

    res = client.post("/api/formula/explain", json={"formula": "=A1", "formulaType": "GoogleSheets"})
    assert res.status_code == 502
    detail = res.json()["detail"]
    assert "Google Sheets" in detail
    assert "abcdef123456" not in detail


def test_superseded_request_drops_result(monkeypatch):
    spec = ChartSpec(
        chartType="pie",
        title="Share",
        caption="by region",
        data=[{"name": "north", "value": 1}],
        config={"dataKey": "value", "indexKey": "name"},
    )

    def _slow_chart(csv, request):
        # 応答待ちの間に新しいリクエストが始まった状態を再現
        request_tokens.cancel("u1", "chart")
        return spec

    monkeypatch.setattr(flows, "generate_chart", _slow_chart)
    client, _ = _client()

    res = client.post("/api/charts/generate", json={"csvData": CSV, "request": "share"}, headers={"X-User-Id": "u1"})
    assert res.json() == {"status": "superseded", "result": None}

    monkeypatch.setattr(flows, "generate_chart", lambda csv, request: spec)
    res = client.post("/api/charts/generate", json={"csvData": CSV, "request": "share"}, headers={"X-User-Id": "u1"})
    assert res.json()["status"] == "ok"


def test_cancel_endpoint():
    client, _ = _client()
    res = client.post("/api/requests/chart/cancel", headers={"X-User-Id": "u1"})
    assert res.status_code == 200
    assert res.json()["generation"] == 1
    assert client.post("/api/requests/unknown/cancel", headers={"X-User-Id": "u1"}).status_code == 404
    assert client.post("/api/requests/chart/cancel").status_code == 401


def test_dataset_id_is_resolved_for_chat(monkeypatch):
    seen = {}

    def _chat(csv, question, history=None):
        seen["csv"] = csv
        seen["history"] = history
        return {"answer": "south"}

    monkeypatch.setattr(flows, "chat_with_data", _chat)
    client, _ = _client()
    upload = client.post("/api/datasets/upload", files={"file": ("s.csv", CSV, "text/csv")}).json()

    res = client.post(
        "/api/data/chat",
        json={
            "dataset_id": upload["dataset_id"],
            "question": "top region?",
            "history": [{"role": "user", "content": "hi"}, {"role": "model", "content": "hello"}],
        },
    )
    assert res.status_code == 200
    assert res.json() == {"status": "ok", "result": {"answer": "south"}}
    assert seen["csv"] == CSV
    assert [m.role for m in seen["history"]] == ["user", "model"]


def test_analyze_uses_dataset_file_name(monkeypatch):
    seen = {}

    def _analyze(csv, file_name):
        seen["file_name"] = file_name
        return None

    monkeypatch.setattr(flows, "analyze_data", _analyze)
    client, _ = _client()
    upload = client.post("/api/datasets/upload", files={"file": ("orders.csv", CSV, "text/csv")}).json()

    res = client.post("/api/data/analyze", json={"dataset_id": upload["dataset_id"]})
    assert res.json()["status"] == "invalid"
    assert seen["file_name"] == "orders.csv"


def test_unknown_dataset_is_not_found():
    client, _ = _client()
    res = client.post("/api/charts/generate", json={"dataset_id": "ds_deadbeef", "request": "x"})
    assert res.status_code == 404


def test_missing_csv_is_bad_request():
    client, _ = _client()
    res = client.post("/api/data/chat", json={"question": "x"})
    assert res.status_code == 400


def test_enhance_chart_request_passes_columns(monkeypatch):
    monkeypatch.setattr(
        flows,
        "enhance_chart_request",
        lambda request, columns: {"enhancedRequest": f"{request} using {','.join(columns)}"},
    )
    client, _ = _client()
    res = client.post("/api/charts/enhance", json={"request": "sales", "columnNames": ["region", "sales"]})
    assert res.json()["result"]["enhancedRequest"] == "sales using region,sales"


def test_credits_endpoint():
    client, _ = _client()
    assert client.get("/api/credits").status_code == 401
    assert client.get("/api/credits", headers={"X-User-Id": "u9"}).json() == {"userId": "u9", "credits": 3, "hasPro": False}
