import os, logging, requests
from typing import List, Dict, Any, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

# ==== Config ====
SUPABASE_URL = (os.environ.get("SUPABASE_URL") or "").rstrip("/")
SUPABASE_KEY = os.environ.get("SUPABASE_SERVICE_KEY", "")
TIMEOUT = 30
PAGE_SIZE = 1000              # PostgREST default max-rows

ORDERS_TABLE = "orders"
ORDER_ITEMS_TABLE = "order_items"
DELIVERY_HISTORY_TABLE = "delivery_history"

STATUS_NOT_EXPORTED = "未出力"
STATUS_EXPORTED = "CSV出力済み"
ADJUSTMENT_PRODUCT_CODE = "9999"

ORDER_FIELDS = "id,order_no,order_date,customer_code,customer_name,status"

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """Raised when the order store rejects or fails a request."""


# ==== Helpers ====

def _error_message(r: requests.Response) -> str:
    try:
        j = r.json()
    except ValueError:
        return r.text or f"HTTP {r.status_code}"
    if isinstance(j, dict):
        return j.get("message") or j.get("error") or str(j)
    return str(j)

def rest_call(method: str, table: str, params: Optional[List[Tuple[str, str]]] = None,
              body: Optional[dict] = None, headers: Optional[dict] = None) -> Any:
    """One request against the store's REST interface; returns decoded JSON."""
    if not SUPABASE_URL:
        raise StoreError("SUPABASE_URL not set")
    if not SUPABASE_KEY:
        raise StoreError("SUPABASE_SERVICE_KEY not set")
    h = {
        "apikey": SUPABASE_KEY,
        "Authorization": f"Bearer {SUPABASE_KEY}",
        "Accept": "application/json",
    }
    if headers:
        h.update(headers)
    url = f"{SUPABASE_URL}/rest/v1/{table}"
    try:
        r = requests.request(method, url, params=params, json=body, headers=h, timeout=TIMEOUT)
    except requests.RequestException as e:
        raise StoreError(f"Store unavailable: {e}") from e
    if not r.ok:
        raise StoreError(f"{method} {table} failed: {_error_message(r)}")
    if not r.content:
        return []
    try:
        return r.json()
    except ValueError as e:
        raise StoreError(f"{method} {table} returned invalid JSON") from e

def resolve_status(status_filter: Optional[str]) -> Optional[str]:
    """'all' or an empty filter means no status restriction."""
    s = (status_filter or "").strip()
    if not s or s == "all":
        return None
    return s

def is_adjustment_line(line: Dict[str, Any]) -> bool:
    return str(line.get("product_code") or "").strip() == ADJUSTMENT_PRODUCT_CODE

# ==== Order lines ====

def order_line_params(start_date: str, end_date: str, status: Optional[str]) -> List[Tuple[str, str]]:
    params = [
        ("select", f"*,orders!inner({ORDER_FIELDS})"),
        ("orders.order_date", f"gte.{start_date}"),
        ("orders.order_date", f"lte.{end_date}"),
        # NULL <> '9999' is not true in SQL, keep lines without a product code
        ("or", f"(product_code.is.null,product_code.neq.{ADJUSTMENT_PRODUCT_CODE})"),
        ("order", "order_id.asc,id.asc"),
    ]
    if status is not None:
        params.append(("orders.status", f"eq.{status}"))
    return params

def select_order_lines(start_date: str, end_date: str, status_filter: Optional[str]) -> List[Dict[str, Any]]:
    """
    All order lines whose parent order date is in [start_date, end_date],
    restricted to the resolved status, adjustment lines excluded.
    Pages through the result with Range headers.
    """
    params = order_line_params(start_date, end_date, resolve_status(status_filter))
    rows: List[Dict[str, Any]] = []
    offset = 0
    while True:
        page = rest_call("GET", ORDER_ITEMS_TABLE, params=params, headers={
            "Range-Unit": "items",
            "Range": f"{offset}-{offset + PAGE_SIZE - 1}",
        }) or []
        rows.extend(page)
        if len(page) < PAGE_SIZE:
            break
        offset += PAGE_SIZE
    lines = [r for r in rows if not is_adjustment_line(r)]
    lines.sort(key=lambda r: (str((r.get("orders") or {}).get("order_date") or ""),
                              _sort_id(r.get("order_id")), _sort_id(r.get("id"))))
    logger.debug("selected %d order lines (%s..%s, status=%s)", len(lines), start_date, end_date, status_filter)
    return lines

def _sort_id(x) -> Tuple[int, str]:
    try: return (int(x), "")
    except (TypeError, ValueError): return (0, str(x or ""))

def mark_orders_exported(order_ids: List[Any]) -> List[Dict[str, Any]]:
    """Set status to exported on every given order in one PATCH; returns the updated orders."""
    ids = sorted({str(i) for i in order_ids if i is not None})
    if not ids:
        return []
    updated = rest_call("PATCH", ORDERS_TABLE,
                        params=[("id", f"in.({','.join(ids)})")],
                        body={"status": STATUS_EXPORTED},
                        headers={"Prefer": "return=representation"})
    return updated or []

# ==== Delivery history ====

def fetch_delivery_history(customer_code: str, limit: int = 100) -> List[Dict[str, Any]]:
    rows = rest_call("GET", DELIVERY_HISTORY_TABLE, params=[
        ("select", "*"),
        ("customer_code", f"eq.{customer_code}"),
        ("order", "id.asc"),
        ("limit", str(limit)),
    ])
    return rows or []
