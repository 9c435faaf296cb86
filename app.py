import os, logging, traceback
from flask import Flask, request, jsonify, make_response
from typing import List, Dict, Any, Optional

from dotenv import load_dotenv

import store
from csv_export import ExportRequest, ExportRequestError, build_csv, distinct_order_ids, export_filename
from store import StoreError

load_dotenv()

# ==== Config ====
SHARED_KEY = os.environ.get("APP_SHARED_KEY", "")
CSV_ENCODING = os.environ.get("CSV_ENCODING", "utf-8-sig")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
DEBUG_DETAIL = os.environ.get("APP_DEBUG_DETAIL", "").strip().lower() in ("1", "true", "yes")

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = Flask(__name__)

# ==== Helpers ====

def http_error(status: int, msg: str, detail: str = ""):
    payload = {"error": msg}
    if detail and DEBUG_DETAIL:
        payload["detail"] = detail
    return make_response(jsonify(payload), status)

def unauthorized() -> bool:
    supplied = request.args.get("key") or request.headers.get("X-App-Key")
    return bool(SHARED_KEY) and supplied != SHARED_KEY

def csv_response(text: str, row_count: int, as_attachment: Optional[str] = None):
    if as_attachment:
        resp = make_response(text.encode(CSV_ENCODING))
        resp.headers["Content-Type"] = f"text/csv; charset={CSV_ENCODING}"
        resp.headers["Content-Disposition"] = f'attachment; filename="{as_attachment}"'
    else:
        resp = make_response(text)
        resp.headers["Content-Type"] = "text/csv; charset=utf-8"
    resp.headers["X-Row-Count"] = str(row_count)
    return resp

# ==== ROUTES (export / delivery history) ====

@app.post("/api/csv/export")
def export_csv():
    """
    Export order lines in a date range as CSV.
    Body (JSON):
      start_date=YYYY-MM-DD, end_date=YYYY-MM-DD  (inclusive, on the order date)
      status_filter=未出力 | CSV出力済み | all
      preview=true  -> CSV text only, nothing is updated

    Without preview the selected orders are marked CSV出力済み and the CSV
    comes back as an attachment with X-Exported-Count.
    Adjustment lines (product code 9999) are never exported.
    """
    if unauthorized():
        return http_error(401, "Unauthorized")
    try:
        req = ExportRequest.from_json(request.get_json(silent=True))
    except ExportRequestError as e:
        return http_error(400, str(e))

    try:
        lines = store.select_order_lines(req.start_date, req.end_date, req.status_filter)
    except StoreError as e:
        logger.error("order line query failed: %s", e)
        return http_error(500, str(e))
    except Exception as e:
        logger.exception("order line query failed")
        return http_error(500, "Internal error", detail=f"{e}\n{traceback.format_exc()}")

    if not lines:
        return http_error(404, "No order lines in the given range")

    if req.preview:
        try:
            return csv_response(build_csv(lines), len(lines))
        except Exception as e:
            logger.exception("preview CSV generation failed")
            return http_error(500, "CSV generation failed", detail=str(e))

    # mark first: a failed update must not hand out a file
    order_ids = distinct_order_ids(lines)
    try:
        updated = store.mark_orders_exported(order_ids)
    except StoreError as e:
        logger.error("status update failed for %d orders: %s", len(order_ids), e)
        return http_error(500, f"Status update failed: {e}")
    except Exception as e:
        logger.exception("status update failed")
        return http_error(500, "Status update failed", detail=f"{e}\n{traceback.format_exc()}")

    exported_count = len(updated)
    logger.info("exported %d lines, %d orders marked %s (%s..%s, filter=%s)",
                len(lines), exported_count, store.STATUS_EXPORTED,
                req.start_date, req.end_date, req.status_filter)

    try:
        text = build_csv(lines)
        resp = csv_response(text, len(lines), as_attachment=export_filename(req.start_date, req.end_date))
    except Exception as e:
        # no rollback: the caller has to know the orders are already marked
        logger.exception("CSV generation failed after %d orders were marked exported", exported_count)
        return http_error(500, f"CSV generation failed; {exported_count} orders were already marked {store.STATUS_EXPORTED}",
                          detail=str(e))
    resp.headers["X-Exported-Count"] = str(exported_count)
    return resp

@app.get("/api/delivery-history")
def delivery_history():
    """Up to 100 delivery records for ?customer_code=..., oldest id first."""
    if unauthorized():
        return http_error(401, "Unauthorized")
    customer_code = (request.args.get("customer_code") or "").strip()
    if not customer_code:
        return jsonify({"deliveries": []})
    try:
        rows: List[Dict[str, Any]] = store.fetch_delivery_history(customer_code)
    except StoreError as e:
        logger.error("delivery history lookup failed for %s: %s", customer_code, e)
        return http_error(500, str(e))
    return jsonify({"deliveries": rows})

@app.get("/health")
def health():
    return jsonify({"ok": True, "version": "csv export v1.1 + delivery-history"})
