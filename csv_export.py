import csv
from dataclasses import dataclass
from datetime import date
from io import StringIO
from typing import List, Dict, Any, Optional, Tuple

# (header label, source) -- source is "orders.<field>" for parent order fields
EXPORT_COLUMNS: List[Tuple[str, str]] = [
    ("受注番号", "orders.order_no"),
    ("受注日", "orders.order_date"),
    ("得意先コード", "orders.customer_code"),
    ("得意先名", "orders.customer_name"),
    ("商品コード", "product_code"),
    ("商品名", "product_name"),
    ("数量", "quantity"),
    ("単価", "unit_price"),
    ("金額", "amount"),
]

DEFAULT_FILENAME = "orders.csv"


class ExportRequestError(ValueError):
    """Bad export parameters (reported as 400)."""


@dataclass(frozen=True)
class ExportRequest:
    start_date: str
    end_date: str
    status_filter: str = "all"
    preview: bool = False

    @classmethod
    def from_json(cls, payload: Optional[dict]) -> "ExportRequest":
        payload = payload if isinstance(payload, dict) else {}
        start = str(payload.get("start_date") or "").strip()
        end = str(payload.get("end_date") or "").strip()
        if not start or not end:
            raise ExportRequestError("start_date and end_date are required")
        for label, value in (("start_date", start), ("end_date", end)):
            try:
                date.fromisoformat(value)
            except ValueError:
                raise ExportRequestError(f"{label} must be YYYY-MM-DD: {value}")
        status = str(payload.get("status_filter") or "").strip() or "all"
        return cls(start, end, status, to_bool(payload.get("preview")))

    def to_json(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "start_date": self.start_date,
            "end_date": self.end_date,
            "status_filter": self.status_filter or "all",
        }
        if self.preview:
            body["preview"] = True
        return body


def to_bool(x) -> bool:
    if isinstance(x, bool):
        return x
    return str(x or "").strip().lower() in ("1", "true", "yes")

def _cell(line: Dict[str, Any], source: str):
    if source.startswith("orders."):
        value = (line.get("orders") or {}).get(source.split(".", 1)[1])
    else:
        value = line.get(source)
    return "" if value is None else value

def build_csv(lines: List[Dict[str, Any]]) -> str:
    """Header row plus one row per order line."""
    buf = StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow([label for label, _ in EXPORT_COLUMNS])
    for line in lines:
        writer.writerow([_cell(line, source) for _, source in EXPORT_COLUMNS])
    return buf.getvalue()

def distinct_order_ids(lines: List[Dict[str, Any]]) -> List[Any]:
    seen, ids = set(), []
    for line in lines:
        oid = line.get("order_id")
        if oid is None:
            oid = (line.get("orders") or {}).get("id")
        if oid is not None and oid not in seen:
            seen.add(oid)
            ids.append(oid)
    return ids

def export_filename(start_date: str, end_date: str) -> str:
    return f"orders_{start_date.replace('-', '')}_{end_date.replace('-', '')}.csv"
