import json
import sys
from pathlib import Path

# Add project root to sys.path
ROOT = Path(__file__).resolve().parents[3]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from apps.api.main import app  # type: ignore


def main(argv: list[str] | None = None) -> Path:
    argv = argv or sys.argv[1:]
    out = Path(argv[0]) if argv else Path("dist/openapi.json")
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(app.openapi(), ensure_ascii=False, indent=2), encoding="utf-8")
    print(f"Wrote {out}")
    return out


if __name__ == "__main__":
    main()
