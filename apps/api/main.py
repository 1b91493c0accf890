from datetime import datetime
import json as _json
import logging
import os as _os
import time
from typing import Any, Callable, Dict, Generic, List, Literal, Optional, TypeVar

from fastapi import Depends, FastAPI, File, Header, HTTPException, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import config as app_config
from .services import accounts, flows, history, metrics, payments, profile, storage
from .services import requests as request_tokens
from .services.llm import GenerationError
from .services.schemas import (
    AnalysisResult,
    AnalyzeRequest,
    ChartRequest,
    ChartSpec,
    ChatAnswer,
    ChatRequest,
    DatasetInput,
    EnhanceChartRequestInput,
    EnhancedChartRequest,
    EnhancedPrompt,
    EnhancePromptRequest,
    ExplainFormulaRequest,
    FormulaExplanation,
    FormulaRequest,
    FormulaResult,
)
from .services.security import redact

LOGGER = logging.getLogger("apps.api")

T = TypeVar("T")

FLOWS = ("formula", "explain", "enhance", "analyze", "chat", "chart", "enhance_chart")


class FlowResponse(BaseModel, Generic[T]):
    status: Literal["ok", "invalid", "superseded"]
    result: Optional[T] = None


class UploadResponse(BaseModel):
    dataset_id: str
    fileName: str
    rowCount: int
    columnNames: List[str]


class HistoryAddRequest(BaseModel):
    content: str


class FavoriteRequest(BaseModel):
    favorite: Optional[bool] = None


class HistoryItem(BaseModel):
    id: str
    content: str
    isFavorite: bool = False
    createdAt: Optional[str] = None


class Account(BaseModel):
    userId: str
    credits: int
    hasPro: bool


class ProviderState(BaseModel):
    configured: bool


class CredentialStatus(BaseModel):
    provider: Literal["openai", "gemini"]
    configured: bool
    providers: Dict[str, ProviderState]


class CredentialUpdateRequest(BaseModel):
    provider: Literal["openai", "gemini"] = "openai"
    api_key: Optional[str] = Field(default=None)


class ProviderUpdateRequest(BaseModel):
    provider: Literal["openai", "gemini"]


def log_event(event_name: str, properties: dict) -> None:
    payload = {
        "event_name": event_name,
        "timestamp": datetime.utcnow().isoformat() + "Z",
        **properties,
    }
    metrics.record_event(event_name, **properties)
    metrics.persist_event(payload)
    LOGGER.info("%s", _json.dumps(payload, ensure_ascii=False))


_history_store: Optional[history.HistoryStore] = None


def get_history_store() -> history.HistoryStore:
    global _history_store
    if _history_store is None:
        _history_store = history.default_store()
    return _history_store


app = FastAPI(title="FormulaFlow API")

# 開発用CORS（Next.js dev server）
app.add_middleware(
    CORSMiddleware,
    allow_origins=_os.getenv("FORMULAFLOW_CORS_ORIGINS", "http://localhost:3000").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health():
    return {"status": "ok"}


# --- flow plumbing ---
def _run_flow(
    flow: str,
    event_name: str,
    user_id: Optional[str],
    fn: Callable[[], Optional[T]],
    failure_message: str,
) -> Dict[str, Any]:
    token = request_tokens.begin(user_id, flow)
    t0 = time.perf_counter()
    try:
        result = fn()
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except GenerationError as exc:
        dur = int((time.perf_counter() - t0) * 1000)
        log_event(event_name, {"flow": flow, "status": "failed", "error": redact(str(exc)), "duration_ms": dur})
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=failure_message)
    dur = int((time.perf_counter() - t0) * 1000)
    if request_tokens.is_superseded(token):
        outcome, result = "superseded", None
    else:
        outcome = "ok" if result is not None else "invalid"
    log_event(event_name, {"flow": flow, "status": outcome, "duration_ms": dur})
    return {"status": outcome, "result": result}


def _resolve_csv(req: DatasetInput) -> str:
    if req.csvData:
        return req.csvData
    if req.dataset_id:
        try:
            return storage.load_csv_text(req.dataset_id)
        except KeyError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="dataset not found")
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="either csvData or dataset_id is required")


def _require_user(user_id: Optional[str]) -> str:
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-Id header is required")
    return user_id


# --- formulas ---
@app.post("/api/formula/generate", response_model=FlowResponse[FormulaResult])
def formula_generate(
    req: FormulaRequest,
    x_user_id: Optional[str] = Header(default=None),
    store: history.HistoryStore = Depends(get_history_store),
) -> Dict[str, Any]:
    if not req.description.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Please enter a description to generate a formula.")
    if x_user_id:
        try:
            accounts.charge_generation(x_user_id)
        except accounts.InsufficientCreditsError:
            raise HTTPException(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                detail="You've run out of free credits. Please upgrade to continue.",
            )
        store.add(x_user_id, "prompts", req.description)
    return _run_flow(
        "formula",
        "FormulaGenerated",
        x_user_id,
        lambda: flows.generate_formula(req.description),
        "An error occurred while generating the formula. Please try again later.",
    )


@app.post("/api/formula/explain", response_model=FlowResponse[FormulaExplanation])
def formula_explain(req: ExplainFormulaRequest, x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    return _run_flow(
        "explain",
        "FormulaExplained",
        x_user_id,
        lambda: flows.explain_formula(req.formula, req.formulaType),
        f"An error occurred while explaining the {req.formulaType} formula.",
    )


@app.post("/api/formula/enhance", response_model=FlowResponse[EnhancedPrompt])
def formula_enhance(req: EnhancePromptRequest, x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    return _run_flow(
        "enhance",
        "PromptEnhanced",
        x_user_id,
        lambda: flows.enhance_prompt(req.description),
        "An error occurred while enhancing the prompt.",
    )


# --- datasets ---
@app.post("/api/datasets/upload", response_model=UploadResponse)
def datasets_upload(
    file: UploadFile = File(...),
    x_user_id: Optional[str] = Header(default=None),
    store: history.HistoryStore = Depends(get_history_store),
) -> UploadResponse:
    try:
        dsid, filename, csv_text = storage.save_upload(file, owner=x_user_id)
    except ValueError as e:
        msg = str(e)
        code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE if "too large" in msg else status.HTTP_400_BAD_REQUEST
        raise HTTPException(status_code=code, detail=msg)
    if x_user_id:
        store.add(x_user_id, "files", filename)
    stats = profile.profile_csv(csv_text)
    log_event("DatasetUploaded", {"dataset_id": dsid, "filename": filename, "chars": len(csv_text)})
    return UploadResponse(dataset_id=dsid, fileName=filename, rowCount=stats["rowCount"], columnNames=stats["columnNames"])


@app.get("/api/datasets", response_model=List[dict])
def datasets_list(x_user_id: Optional[str] = Header(default=None)) -> List[dict]:
    return storage.list_datasets(owner=x_user_id)


# --- data analysis / chat ---
@app.post("/api/data/analyze", response_model=FlowResponse[AnalysisResult])
def data_analyze(req: AnalyzeRequest, x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    csv_data = _resolve_csv(req)
    file_name = req.fileName
    if not file_name and req.dataset_id:
        file_name = (storage.get_dataset(req.dataset_id) or {}).get("name")
    return _run_flow(
        "analyze",
        "DataAnalyzed",
        x_user_id,
        lambda: flows.analyze_data(csv_data, file_name or "data.csv"),
        "An error occurred while analyzing the data. Please try again.",
    )


@app.post("/api/data/chat", response_model=FlowResponse[ChatAnswer])
def data_chat(req: ChatRequest, x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    csv_data = _resolve_csv(req)
    return _run_flow(
        "chat",
        "DataQuestionAnswered",
        x_user_id,
        lambda: flows.chat_with_data(csv_data, req.question, req.history),
        "Sorry, I encountered an error. Please try again.",
    )


# --- charts ---
@app.post("/api/charts/generate", response_model=FlowResponse[ChartSpec])
def charts_generate(req: ChartRequest, x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    csv_data = _resolve_csv(req)
    return _run_flow(
        "chart",
        "ChartGenerated",
        x_user_id,
        lambda: flows.generate_chart(csv_data, req.request),
        "An error occurred while generating the chart. Please try again.",
    )


@app.post("/api/charts/enhance", response_model=FlowResponse[EnhancedChartRequest])
def charts_enhance(req: EnhanceChartRequestInput, x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    return _run_flow(
        "enhance_chart",
        "ChartRequestEnhanced",
        x_user_id,
        lambda: flows.enhance_chart_request(req.request, req.columnNames),
        "An error occurred while enhancing the chart request.",
    )


@app.post("/api/requests/{flow}/cancel")
def requests_cancel(flow: str, x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    user_id = _require_user(x_user_id)
    if flow not in FLOWS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="unknown flow")
    generation = request_tokens.cancel(user_id, flow)
    return {"flow": flow, "generation": generation, "cancelled": True}


# --- history ---
def _history_call(fn: Callable[[], T]) -> T:
    try:
        return fn()
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@app.get("/api/history/{kind}", response_model=List[HistoryItem])
def history_list(
    kind: str,
    x_user_id: Optional[str] = Header(default=None),
    store: history.HistoryStore = Depends(get_history_store),
) -> List[Dict[str, Any]]:
    user_id = _require_user(x_user_id)
    return _history_call(lambda: store.list(user_id, kind))


@app.post("/api/history/{kind}", response_model=HistoryItem)
def history_add(
    kind: str,
    req: HistoryAddRequest,
    x_user_id: Optional[str] = Header(default=None),
    store: history.HistoryStore = Depends(get_history_store),
) -> Dict[str, Any]:
    user_id = _require_user(x_user_id)
    return _history_call(lambda: store.add(user_id, kind, req.content))


@app.post("/api/history/{kind}/{item_id}/favorite", response_model=HistoryItem)
def history_favorite(
    kind: str,
    item_id: str,
    req: Optional[FavoriteRequest] = None,
    x_user_id: Optional[str] = Header(default=None),
    store: history.HistoryStore = Depends(get_history_store),
) -> Dict[str, Any]:
    user_id = _require_user(x_user_id)
    favorite = req.favorite if req else None
    item = _history_call(lambda: store.set_favorite(user_id, kind, item_id, favorite))
    if item is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return item


@app.delete("/api/history/{kind}/{item_id}")
def history_delete(
    kind: str,
    item_id: str,
    x_user_id: Optional[str] = Header(default=None),
    store: history.HistoryStore = Depends(get_history_store),
) -> Dict[str, Any]:
    user_id = _require_user(x_user_id)
    if not _history_call(lambda: store.delete(user_id, kind, item_id)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return {"deleted": True}


@app.delete("/api/history/{kind}")
def history_clear(
    kind: str,
    x_user_id: Optional[str] = Header(default=None),
    store: history.HistoryStore = Depends(get_history_store),
) -> Dict[str, Any]:
    user_id = _require_user(x_user_id)
    _history_call(lambda: store.clear(user_id, kind))
    return {"cleared": True}


# --- credits / payments ---
@app.get("/api/credits", response_model=Account)
def credits(x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    return accounts.get_account(_require_user(x_user_id))


@app.post("/api/payment-verification")
async def payment_verification(request: Request) -> JSONResponse:
    try:
        data = _json.loads(await request.body())
        if not isinstance(data, dict):
            raise ValueError("payload must be a JSON object")
        secret = app_config.get_payment_secret()
        payments.process_payment(data, secret)
    except payments.SignatureMismatch as exc:
        log_event("PaymentRejected", {"order_id": data.get("razorpay_order_id"), "status": "failed"})
        return JSONResponse({"status": "error", "message": str(exc)}, status_code=status.HTTP_400_BAD_REQUEST)
    except Exception as exc:
        LOGGER.exception("payment verification failed")
        return JSONResponse(
            {"status": "error", "message": redact(str(exc))},
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
    log_event("PaymentVerified", {"order_id": data.get("razorpay_order_id"), "user_id": data.get("userId"), "status": "ok"})
    return JSONResponse({"status": "ok"})


# --- credentials ---
@app.get("/api/credentials/llm", response_model=CredentialStatus)
def credentials_llm_status() -> CredentialStatus:
    provider = app_config.get_llm_provider()
    provider_states = {
        name: ProviderState(configured=app_config.is_provider_configured(name))
        for name in sorted(app_config.SUPPORTED_PROVIDERS)
    }
    configured = provider_states.get(provider, ProviderState(configured=False)).configured
    return CredentialStatus(provider=provider, configured=configured, providers=provider_states)


@app.post("/api/credentials/llm", status_code=status.HTTP_204_NO_CONTENT)
def credentials_llm_update(req: CredentialUpdateRequest) -> None:
    key = (req.api_key or "").strip()
    if not key:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="api_key is required")
    if len(key) < 8:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="api_key must be at least 8 characters")
    try:
        app_config.set_llm_credentials(req.provider, key)
    except app_config.CredentialsError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    log_event("LLMCredentialsUpdated", {"provider": req.provider, "configured": True})


@app.post("/api/credentials/llm/provider", status_code=status.HTTP_204_NO_CONTENT)
def credentials_llm_set_active(req: ProviderUpdateRequest) -> None:
    try:
        app_config.set_active_provider(req.provider)
    except app_config.CredentialsError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    log_event("LLMProviderSwitched", {"provider": req.provider})


# --- metrics ---
@app.get("/api/metrics/slo")
def metrics_slo() -> Dict[str, Any]:
    thresholds = metrics.load_thresholds()
    return {
        "snapshot": metrics.slo_snapshot(),
        "evaluation": metrics.detect_violations(thresholds),
        "thresholds": thresholds,
    }
