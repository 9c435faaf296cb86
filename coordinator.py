"""
Operator-side driver for the CSV export workflow.

ExportCoordinator keeps the form state (date range, status filter) and the
results of the two actions:

  request_preview()  -- dry run, shows how many lines would be exported
  commit_export()    -- downloads the CSV and marks the orders CSV出力済み

Errors never escape the two actions; they are reported through the
``notify(level, message)`` callback and the state is left consistent.
"""
import os, re, logging, requests
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Callable, Optional

from dotenv import load_dotenv

from csv_export import ExportRequest, DEFAULT_FILENAME
from store import STATUS_NOT_EXPORTED, STATUS_EXPORTED

load_dotenv()

# ==== Config ====
EXPORT_API_URL = (os.environ.get("EXPORT_API_URL") or "http://localhost:5000").rstrip("/")
EXPORT_PATH = "/api/csv/export"
DOWNLOAD_DIR = os.environ.get("EXPORT_DOWNLOAD_DIR", ".")
TIMEOUT = 30

MSG_DATES_REQUIRED = "開始日と終了日を指定してください"
MSG_PREVIEW_FAILED = "プレビューに失敗しました"
MSG_EXPORT_FAILED = "CSV出力に失敗しました"
MSG_NO_DATA = "指定期間の対象データがありません"

STATUS_OPTIONS = [
    (STATUS_NOT_EXPORTED, "未出力のみ"),
    ("all", "すべて（再出力含む）"),
    (STATUS_EXPORTED, "出力済みのみ"),
]

_FILENAME_RE = re.compile(r'filename="(.+)"')

logger = logging.getLogger(__name__)


class ValidationError(Exception):
    """Missing input, caught before any request is sent."""


class RequestError(Exception):
    """Non-success response from the export endpoint."""


def _first_of_month(today: date) -> date:
    return today.replace(day=1)

def _default_notify(level: str, message: str) -> None:
    logger.log(logging.ERROR if level == "error" else logging.INFO, message)


@dataclass
class ExportState:
    start_date: str = field(default_factory=lambda: _first_of_month(date.today()).isoformat())
    end_date: str = field(default_factory=lambda: date.today().isoformat())
    status_filter: str = STATUS_NOT_EXPORTED
    preview_count: Optional[int] = None
    last_exported_count: Optional[int] = None
    busy_preview: bool = False
    busy_commit: bool = False


def server_message(resp, fallback: str) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return fallback
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return fallback

def count_csv_lines(text: str) -> int:
    """Data lines in a CSV body (all lines minus the header)."""
    text = text.strip()
    if not text:
        return 0
    return len(text.split("\n")) - 1

def filename_from_disposition(value: Optional[str]) -> str:
    m = _FILENAME_RE.search(value or "")
    if not m:
        return DEFAULT_FILENAME
    # never write outside the download directory
    name = Path(m.group(1)).name
    return name or DEFAULT_FILENAME

def to_int(x) -> int:
    try: return int(x or 0)
    except (TypeError, ValueError): return 0


class ExportCoordinator:
    def __init__(self, base_url: str = EXPORT_API_URL, download_dir=DOWNLOAD_DIR,
                 notify: Callable[[str, str], None] = _default_notify,
                 session=None, app_key: str = ""):
        self.url = base_url.rstrip("/") + EXPORT_PATH
        self.download_dir = Path(download_dir)
        self.notify = notify
        self.session = session or requests.Session()
        self.app_key = app_key or os.environ.get("APP_SHARED_KEY", "")
        self.state = ExportState()
        self.last_saved_path: Optional[Path] = None

    # ---- form inputs ----

    def _invalidate(self) -> None:
        self.state.preview_count = None
        self.state.last_exported_count = None

    def set_start_date(self, value: str) -> None:
        self.state.start_date = value
        self._invalidate()

    def set_end_date(self, value: str) -> None:
        self.state.end_date = value
        self._invalidate()

    def set_status_filter(self, value: str) -> None:
        if value not in dict(STATUS_OPTIONS):
            raise ValueError(f"unknown status filter: {value}")
        self.state.status_filter = value
        self._invalidate()

    @property
    def can_commit(self) -> bool:
        # unknown count is fine: commit does its own selection
        return not self.state.busy_commit and self.state.preview_count != 0

    # ---- actions ----

    def _build_request(self, preview: bool) -> ExportRequest:
        s = self.state
        if not s.start_date or not s.end_date:
            raise ValidationError(MSG_DATES_REQUIRED)
        return ExportRequest(s.start_date, s.end_date, s.status_filter or "all", preview)

    def _post(self, req: ExportRequest):
        headers = {"X-App-Key": self.app_key} if self.app_key else {}
        return self.session.post(self.url, json=req.to_json(), headers=headers, timeout=TIMEOUT)

    def request_preview(self) -> Optional[int]:
        """Dry-run the export; returns the line count, or None on failure."""
        if self.state.busy_preview:
            return None
        try:
            req = self._build_request(preview=True)
        except ValidationError as e:
            self.notify("error", str(e))
            return None

        self.state.busy_preview = True
        self.state.last_exported_count = None
        try:
            resp = self._post(req)
            if resp.status_code == 404:
                self.state.preview_count = 0
                return 0
            if not resp.ok:
                raise RequestError(server_message(resp, MSG_PREVIEW_FAILED))
            header = resp.headers.get("X-Row-Count")
            count = to_int(header) if header is not None else count_csv_lines(resp.text)
            self.state.preview_count = count
            return count
        except RequestError as e:
            self.notify("error", str(e))
        except (requests.RequestException, ValueError):
            logger.exception("preview request failed")
            self.notify("error", MSG_PREVIEW_FAILED)
        finally:
            self.state.busy_preview = False
        self.state.preview_count = None
        return None

    def commit_export(self) -> Optional[Path]:
        """Run the export, save the CSV, return its path (None on failure)."""
        if not self.can_commit:
            return None
        try:
            req = self._build_request(preview=False)
        except ValidationError as e:
            self.notify("error", str(e))
            return None

        self.state.busy_commit = True
        try:
            resp = self._post(req)
            if resp.status_code == 404:
                self.notify("error", MSG_NO_DATA)
                return None
            if not resp.ok:
                raise RequestError(server_message(resp, MSG_EXPORT_FAILED))

            exported = to_int(resp.headers.get("X-Exported-Count"))
            filename = filename_from_disposition(resp.headers.get("Content-Disposition"))
            path = self.save_file(filename, resp.content)

            self.state.last_exported_count = exported
            self.state.preview_count = None
            self.notify("success", f"CSVファイルをダウンロードしました（{exported}件の受注を{STATUS_EXPORTED}に更新）")
            return path
        except RequestError as e:
            self.notify("error", str(e))
        except (requests.RequestException, OSError, ValueError):
            logger.exception("export request failed")
            self.notify("error", MSG_EXPORT_FAILED)
        finally:
            self.state.busy_commit = False
        return None

    def save_file(self, filename: str, content: bytes) -> Path:
        self.download_dir.mkdir(parents=True, exist_ok=True)
        path = self.download_dir / filename
        path.write_bytes(content)
        self.last_saved_path = path
        logger.info("saved %s (%d bytes)", path, len(content))
        return path
