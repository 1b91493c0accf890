from __future__ import annotations

import io
import json
import re
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Tuple

import pandas as pd

from apps.api import config

ALLOWED_EXTENSIONS = (".csv", ".xlsx")

_LOCK = threading.Lock()
_DATASET_ID = re.compile(r"^ds_[0-9a-f]{8}$")


def base_dir() -> Path:
    return config.data_dir() / "datasets"


def index_path() -> Path:
    return base_dir() / "index.json"


def ensure_dirs() -> None:
    base_dir().mkdir(parents=True, exist_ok=True)


def generate_dataset_id() -> str:
    return "ds_" + uuid.uuid4().hex[:8]


def dataset_path(dataset_id: str) -> Path:
    return base_dir() / f"{dataset_id}.csv"


def _read_chunks(file_obj, chunk_size: int = 64 * 1024):
    while True:
        chunk = file_obj.file.read(chunk_size)
        if not chunk:
            break
        yield chunk


def read_limited(file_obj, max_bytes: int) -> bytes:
    """Read an upload into memory, failing as soon as it exceeds ``max_bytes``."""
    buf = bytearray()
    for chunk in _read_chunks(file_obj):
        buf.extend(chunk)
        if len(buf) > max_bytes:
            raise ValueError("file too large: the limit is 1MB")
    return bytes(buf)


def check_extension(filename: str) -> str:
    name = (filename or "").lower()
    for ext in ALLOWED_EXTENSIONS:
        if name.endswith(ext):
            return ext
    raise ValueError("unsupported file type: only .csv or .xlsx allowed")


def xlsx_to_csv(raw: bytes) -> str:
    """Convert the first worksheet of an .xlsx workbook to CSV text."""
    try:
        df = pd.read_excel(io.BytesIO(raw), sheet_name=0, engine="openpyxl")
    except Exception as exc:
        raise ValueError(f"could not read workbook: {exc}") from exc
    return df.to_csv(index=False)


def decode_csv(raw: bytes) -> str:
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def ingest_upload(file_obj, *, max_bytes: int = config.MAX_UPLOAD_BYTES) -> Tuple[str, str]:
    """Validate an uploaded file and return ``(csv_text, filename)``.

    Extension and size are checked before the content is parsed.
    """
    filename = file_obj.filename or ""
    ext = check_extension(filename)
    raw = read_limited(file_obj, max_bytes)
    if ext == ".xlsx":
        return xlsx_to_csv(raw), filename
    return decode_csv(raw), filename


def _load_index() -> Dict[str, List[Dict]]:
    path = index_path()
    if not path.exists():
        return {"datasets": []}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {"datasets": []}


def _save_index(data: Dict[str, List[Dict]]) -> None:
    path = index_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")


def register_dataset(dataset_id: str, filename: str, owner: str | None, size_chars: int) -> Dict:
    entry = {
        "id": dataset_id,
        "name": filename,
        "owner": owner,
        "size": size_chars,
        "created_at": datetime.utcnow().isoformat() + "Z",
    }
    with _LOCK:
        data = _load_index()
        items = [d for d in data.get("datasets", []) if d.get("id") != dataset_id]
        items.append(entry)
        data["datasets"] = items
        _save_index(data)
    return entry


def list_datasets(owner: str | None = None) -> List[Dict]:
    items = _load_index().get("datasets", [])
    if owner:
        items = [d for d in items if d.get("owner") == owner]
    return items


def get_dataset(dataset_id: str) -> Dict | None:
    for d in _load_index().get("datasets", []):
        if d.get("id") == dataset_id:
            return d
    return None


def save_upload(file_obj, *, owner: str | None = None) -> Tuple[str, str, str]:
    """Ingest and persist an upload. Returns ``(dataset_id, filename, csv_text)``."""
    csv_text, filename = ingest_upload(file_obj)
    ensure_dirs()
    dsid = generate_dataset_id()
    dataset_path(dsid).write_text(csv_text, encoding="utf-8")
    register_dataset(dsid, filename, owner, len(csv_text))
    return dsid, filename, csv_text


def load_csv_text(dataset_id: str) -> str:
    if not _DATASET_ID.match(dataset_id or ""):
        raise KeyError(dataset_id)
    path = dataset_path(dataset_id)
    if not path.exists():
        raise KeyError(dataset_id)
    return path.read_text(encoding="utf-8")
