import pytest

from apps.api import config as app_config
from apps.api.services import metrics
from apps.api.services import requests as request_tokens


@pytest.fixture(autouse=True)
def isolated_state(tmp_path, monkeypatch):
    # データ/メトリクス/認証ファイルをテスト毎の一時ディレクトリへ
    monkeypatch.setenv("FORMULAFLOW_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("FORMULAFLOW_CREDENTIALS_FILE", str(tmp_path / "credentials.json"))
    monkeypatch.delenv("RAZORPAY_KEY_SECRET", raising=False)
    for name in ("FORMULAFLOW_LLM_MODEL", "FORMULAFLOW_METRICS_LOG", "FORMULAFLOW_SLO_THRESHOLDS", "FORMULAFLOW_SLO_OUTPUT"):
        monkeypatch.delenv(name, raising=False)
    metrics.set_event_log_path(tmp_path / "events.jsonl")
    metrics.reset()
    request_tokens.reset()
    app_config.reset_cache()
    yield
    app_config.reset_cache()
