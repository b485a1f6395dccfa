import os
import sys
import json
import math
import re
import time
import zlib
import codecs
import hashlib
import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from logging.handlers import RotatingFileHandler
from datetime import date, datetime, timezone, timedelta
from typing import List, Dict, Any, Optional, Tuple, Iterable, Iterator, Sequence, Set, Union, Callable

import pandas as pd
import requests
from dateutil import parser as dateparser
from dotenv import load_dotenv
from tqdm import tqdm

try:
    import pyarrow as pa  # type: ignore
    import pyarrow.parquet as pq  # type: ignore
except Exception:  # pragma: no cover
    pa = None
    pq = None

load_dotenv()

# --------------------------
# Configuration and Defaults
# --------------------------
# Public daily trade archives, one gzip CSV per UTC day: <SOURCE_URL>/YYYYMMDD.csv.gz
SOURCE_URL = os.environ.get("TICK_SOURCE_URL", "https://s3-eu-west-1.amazonaws.com/public.bitmex.com/data/trade")
START_DATE = os.environ.get("START_DATE")
END_DATE = os.environ.get("END_DATE")  # exclusive
# JSON list (["XBTUSD","ETHUSD"]) or comma separated; empty means every symbol is accepted
ACCEPTED_TICKERS = os.environ.get("ACCEPTED_TICKERS", "")
OUTPUT_FORMAT = os.environ.get("TICK_OUTPUT_FORMAT", "csv")  # csv | parquet
DATA_DIR = os.environ.get("TICK_DATA_DIR", "data")
MANIFEST_FILE = os.path.join(DATA_DIR, "manifest.json")
LOG_DIR = os.path.join("logs")
LOG_FILE = os.path.join(LOG_DIR, "loader.log")

# Archive schema (10 fields), in file order
TICK_COLUMNS = [
    "timestamp", "symbol", "side", "size", "price",
    "tickDirection", "trdMatchID", "grossValue", "homeNotional", "foreignNotional"
]
NUMERIC_COLUMNS = ["size", "price", "grossValue", "homeNotional", "foreignNotional"]
POSITIVE_COLUMNS = ("size", "price")
VALID_SIDES = ("Buy", "Sell")
VALID_TICK_DIRECTIONS = ("ZeroPlusTick", "MinusTick", "ZeroMinusTick", "PlusTick")
TRADE_ID_PATTERN = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")
TIME_ONLY_PATTERN = re.compile(r"^\d{2}:\d{2}(:\d{2}([.,]\d+)?)?$")

AMOUNT_TOLERANCE = 0.1  # relative
SATOSHIS_PER_XBT = 100_000_000
# Lines per progress step while cleaning a day; no effect on results
DECODE_CHUNK_LINES = 1000
PARQUET_COMPRESSION = "zstd"

# Transport
HTTP_TIMEOUT_SEC = float(os.environ.get("HTTP_TIMEOUT_SEC", "60"))
STREAM_CHUNK_BYTES = 1024 * 1024
MAX_RETRIES = int(os.environ.get("MAX_RETRIES", "3"))
RETRY_BACKOFF_BASE_SEC = float(os.environ.get("RETRY_BACKOFF_BASE_SEC", "1.5"))

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class LoaderError(Exception):
    """Base class for errors that stop a day or the whole run."""


class ConfigError(LoaderError, ValueError):
    """Invalid startup configuration (dates, tickers, format)."""


class SourceError(LoaderError):
    """The archive for a day could not be fetched or decompressed."""


class PersistenceError(LoaderError):
    """Validated ticks for a day could not be written."""


def configure_paths(data_dir: Optional[str] = None) -> None:
    """Point the output directory and manifest at data_dir (or TICK_DATA_DIR)."""
    global DATA_DIR, MANIFEST_FILE
    DATA_DIR = data_dir or os.environ.get("TICK_DATA_DIR", "data")
    MANIFEST_FILE = os.path.join(DATA_DIR, "manifest.json")


def parse_accepted_tickers(raw: Optional[Union[str, Iterable[str]]]) -> List[str]:
    if raw is None:
        return []
    if not isinstance(raw, str):
        return [str(t).strip() for t in raw if str(t).strip()]
    s = raw.strip()
    if not s:
        return []
    if s.startswith("["):
        try:
            values = json.loads(s)
        except json.JSONDecodeError as e:
            raise ConfigError(f"ACCEPTED_TICKERS is not valid JSON: {e}") from e
        if not isinstance(values, list):
            raise ConfigError("ACCEPTED_TICKERS must be a JSON list")
        return [str(t).strip() for t in values if str(t).strip()]
    return [t.strip() for t in s.split(",") if t.strip()]


# --------------------------
# Helpers
# --------------------------

def ensure_dirs():
    os.makedirs(DATA_DIR, exist_ok=True)
    os.makedirs(LOG_DIR, exist_ok=True)


def sweep_tmp_files(logger: Optional[logging.Logger] = None):
    """Remove lingering temporary files that indicate interrupted writes."""
    if not os.path.isdir(DATA_DIR):
        return
    for name in os.listdir(DATA_DIR):
        if name.endswith('.tmp'):
            path = os.path.join(DATA_DIR, name)
            try:
                os.remove(path)
                if logger:
                    logger.info(f"Removed lingering temp file: {path}")
            except OSError as e:
                if logger:
                    logger.warning(f"Failed to remove temp file {path}: {e}")


class SafeRotatingFileHandler(RotatingFileHandler):
    def rotate(self, source, dest):
        # os.rename fails on Windows if dest exists
        if os.path.exists(dest):
            try:
                os.remove(dest)
            except OSError:
                pass
        os.replace(source, dest)


_atexit_registered = False


def shutdown_logging():
    """Close and remove all handlers attached to the 'tickloader' logger."""
    logger = logging.getLogger("tickloader")
    for h in list(logger.handlers):
        try:
            h.flush()
            h.close()
        finally:
            logger.removeHandler(h)


def setup_logging(verbose: bool = True, sweep: bool = True) -> logging.Logger:
    global _atexit_registered
    ensure_dirs()
    logger = logging.getLogger("tickloader")
    logger.setLevel(logging.INFO)
    logger.propagate = False
    # Avoid duplicate handlers if setup_logging is called multiple times
    if logger.handlers:
        shutdown_logging()
    formatter = logging.Formatter(fmt="%(asctime)s | %(levelname)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    fh = SafeRotatingFileHandler(LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
    fh.setLevel(logging.INFO)
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    if verbose:
        ch = logging.StreamHandler(sys.stdout)
        ch.setLevel(logging.INFO)
        ch.setFormatter(formatter)
        logger.addHandler(ch)

    if sweep:
        sweep_tmp_files(logger)

    if not _atexit_registered:
        import atexit
        atexit.register(shutdown_logging)
        _atexit_registered = True

    return logger


def parse_day(value: Union[str, date, datetime, None]) -> date:
    """Parse a calendar day from 'YYYY-MM-DD', 'YYYYMMDD' or an ISO timestamp."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if value is None or not str(value).strip():
        raise ConfigError("Missing start or end date")
    try:
        return dateparser.isoparse(str(value).strip()).date()
    except (ValueError, OverflowError) as e:
        raise ConfigError(f"Invalid date: {value!r}") from e


def parse_range(start: Union[str, date, None], end: Union[str, date, None]) -> Tuple[date, date]:
    start_day = parse_day(start)
    end_day = parse_day(end)
    if start_day >= end_day:
        raise ConfigError(f"Invalid start or end date: {start_day.isoformat()} >= {end_day.isoformat()}")
    return start_day, end_day


def day_token(day: date) -> str:
    return day.strftime("%Y%m%d")


def iter_days(start: date, end: date) -> Iterator[date]:
    """Yield calendar days from start (inclusive) to end (exclusive)."""
    day = start
    while day < end:
        yield day
        day = day + timedelta(days=1)


def datetime_to_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - EPOCH) // timedelta(milliseconds=1)


def hash_file_sha256(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


# --------------------------
# Row Validation
# --------------------------

class RejectionKind(str, Enum):
    EMPTY_ROW = "EmptyRow"
    HEADER_ROW = "HeaderRow"
    MISSING_FIELD = "MissingField"
    INVALID_TRADE_ID = "InvalidTradeId"
    INVALID_SIDE = "InvalidSide"
    INVALID_TICK_DIRECTION = "InvalidTickDirection"
    UNACCEPTED_SYMBOL = "UnacceptedSymbol"
    INVALID_TIMESTAMP = "InvalidTimestamp"
    AMOUNT_MISMATCH = "AmountMismatch"


@dataclass(frozen=True)
class Rejection:
    kind: RejectionKind
    message: str
    field: Optional[str] = None
    value: Any = None
    computed: Optional[float] = None
    reported: Optional[float] = None


@dataclass(frozen=True)
class Tick:
    timestamp: int  # epoch ms
    symbol: str
    side: str
    size: float
    price: float
    tick_direction: str
    trd_match_id: str
    gross_value: float
    home_notional: float
    foreign_notional: float

    def as_row(self) -> List[Any]:
        """Values in TICK_COLUMNS order."""
        return [
            self.timestamp, self.symbol, self.side, self.size, self.price,
            self.tick_direction, self.trd_match_id, self.gross_value, self.home_notional, self.foreign_notional,
        ]


def _to_float(value: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def _is_missing(value: Any) -> bool:
    if isinstance(value, float):
        # zero is as empty as NaN in the archive
        return not math.isfinite(value) or value == 0
    return value is None or value == ""


def _within_tolerance(computed: float, reported: float) -> bool:
    # a negative reported amount can never be within tolerance
    return abs(computed - reported) <= AMOUNT_TOLERANCE * reported


def parse_tick_timestamp(raw: str, day: Optional[date] = None) -> Optional[int]:
    """Parse an archive timestamp (e.g. 2019-01-01D00:00:06.925985000) to epoch ms.
    The 'D' date/time separator is repaired to 'T'. A bare time of day is placed on `day`.
    Naive values are UTC. Returns None when unparseable.
    """
    text = raw.strip().replace("D", "T", 1)
    if day is not None and TIME_ONLY_PATTERN.match(text):
        text = f"{day.isoformat()}T{text}"
    try:
        dt = dateparser.isoparse(text)
    except (ValueError, OverflowError):
        return None
    return datetime_to_ms(dt)


class RowValidator:
    """Turns one raw archive line into a Tick or a classified Rejection.

    accepted_symbols is the ticker allow-list; empty or None accepts every symbol.
    validate() has no side effects: the same inputs always give the same outcome.
    """

    def __init__(self, accepted_symbols: Optional[Iterable[str]] = None):
        self.accepted_symbols = frozenset(accepted_symbols or ())

    def accepts_symbol(self, symbol: str) -> bool:
        return not self.accepted_symbols or symbol in self.accepted_symbols

    def validate(self, raw_line: Optional[str], header: Optional[str], day: Optional[date] = None) -> Union[Tick, Rejection]:
        if not raw_line:
            return Rejection(RejectionKind.EMPTY_ROW, "Empty row")

        line = raw_line
        # Upstream quirk: some rows start with a stray separator
        if line.startswith(","):
            line = line[1:]

        if header is not None and line == header:
            return Rejection(RejectionKind.HEADER_ROW, "Header row")

        cells = line.split(",")
        if len(cells) < len(TICK_COLUMNS):
            cells = cells + [""] * (len(TICK_COLUMNS) - len(cells))
        record: Dict[str, Any] = {}
        for name, cell in zip(TICK_COLUMNS, cells):
            record[name] = _to_float(cell) if name in NUMERIC_COLUMNS else cell

        for name in TICK_COLUMNS:
            if _is_missing(record[name]) or (name in POSITIVE_COLUMNS and record[name] < 0):
                return Rejection(RejectionKind.MISSING_FIELD, f"Invalid {name} : {record[name]}",
                                 field=name, value=record[name])

        trade_id = record["trdMatchID"]
        # the whole field must be the id, not just start with one
        if not TRADE_ID_PATTERN.fullmatch(trade_id):
            return Rejection(RejectionKind.INVALID_TRADE_ID, f"Invalid TradeId: {trade_id}",
                             field="trdMatchID", value=trade_id)

        if record["side"] not in VALID_SIDES:
            return Rejection(RejectionKind.INVALID_SIDE, f"Invalid side: {record['side']}",
                             field="side", value=record["side"])

        if record["tickDirection"] not in VALID_TICK_DIRECTIONS:
            return Rejection(RejectionKind.INVALID_TICK_DIRECTION, f"Invalid tickDirection: {record['tickDirection']}",
                             field="tickDirection", value=record["tickDirection"])

        symbol = record["symbol"]
        if not self.accepts_symbol(symbol):
            return Rejection(RejectionKind.UNACCEPTED_SYMBOL, f"Invalid ticker: {symbol}",
                             field="symbol", value=symbol)

        is_perp = symbol[-3:] == "USD"
        is_alt = symbol[:3] != "XBT"

        timestamp_ms = parse_tick_timestamp(record["timestamp"], day)
        if timestamp_ms is None:
            return Rejection(RejectionKind.INVALID_TIMESTAMP, f"Invalid date: {record['timestamp']}",
                             field="timestamp", value=record["timestamp"])

        size = record["size"]
        price = record["price"]
        gross_value = record["grossValue"]
        home_notional = record["homeNotional"]
        foreign_notional = record["foreignNotional"]

        computed_foreign = size if is_perp else size * price
        if not _within_tolerance(computed_foreign, foreign_notional):
            return Rejection(RejectionKind.AMOUNT_MISMATCH, f"Invalid amounts: {computed_foreign} != {foreign_notional}",
                             field="foreignNotional", computed=computed_foreign, reported=foreign_notional)

        computed_home = size / price if is_perp else size
        if not _within_tolerance(computed_home, home_notional):
            return Rejection(RejectionKind.AMOUNT_MISMATCH, f"Invalid amounts: {computed_home:.4f} != {home_notional:.4f}",
                             field="homeNotional", computed=computed_home, reported=home_notional)

        # Alt-coin perpetuals have no reliable satoshi conversion
        if not (is_alt and is_perp):
            computed_gross = (home_notional if is_perp else foreign_notional) * SATOSHIS_PER_XBT
            if not _within_tolerance(computed_gross, gross_value):
                return Rejection(RejectionKind.AMOUNT_MISMATCH, f"Invalid amounts: {computed_gross} != {gross_value}",
                                 field="grossValue", computed=computed_gross, reported=gross_value)

        return Tick(
            timestamp=timestamp_ms,
            symbol=symbol,
            side=record["side"],
            size=size,
            price=price,
            tick_direction=record["tickDirection"],
            trd_match_id=trade_id,
            gross_value=gross_value,
            home_notional=home_notional,
            foreign_notional=foreign_notional,
        )


# --------------------------
# Batch Decoding
# --------------------------

@dataclass
class DecodeResult:
    day: date
    accepted: List[Tick] = field(default_factory=list)
    rejected: int = 0
    seen: int = 0
    reasons: Counter = field(default_factory=Counter)
    header: Optional[str] = None

    @property
    def skipped_label(self) -> str:
        return f"{self.rejected}/{self.seen} rows skipped"


def decode_lines(lines: Sequence[str],
                 day: date,
                 validator: RowValidator,
                 logger: Optional[logging.Logger] = None,
                 progress: Optional[Callable[[int, str], None]] = None,
                 chunk_size: int = DECODE_CHUNK_LINES) -> DecodeResult:
    """Validate every line of one day.
    The first line is captured as the day's header and later identical lines are dropped as HeaderRow.
    `progress(chunk_index, label)` is called after each chunk of `chunk_size` lines.
    """
    if not isinstance(lines, (list, tuple)):
        lines = list(lines)
    result = DecodeResult(day=day)
    header: Optional[str] = None
    for chunk_index, offset in enumerate(range(0, len(lines), chunk_size)):
        for raw in lines[offset:offset + chunk_size]:
            outcome = validator.validate(raw, header, day)
            if result.seen == 0:
                header = raw
                result.header = raw
            result.seen += 1
            if isinstance(outcome, Rejection):
                result.rejected += 1
                result.reasons[outcome.kind.value] += 1
                if logger is not None and logger.isEnabledFor(logging.DEBUG):
                    logger.debug(f"Line skipped ({day.isoformat()}): {outcome.message}")
            else:
                result.accepted.append(outcome)
        if progress is not None:
            progress(chunk_index, result.skipped_label)
    return result


# --------------------------
# Sources
# --------------------------

def iter_gunzipped(chunks: Iterable[bytes]) -> Iterator[bytes]:
    """Decompress a gzip byte stream incrementally. Concatenated gzip members are supported."""
    decomp = zlib.decompressobj(16 + zlib.MAX_WBITS)
    pending = False
    members = 0
    try:
        for chunk in chunks:
            while chunk:
                pending = True
                out = decomp.decompress(chunk)
                if out:
                    yield out
                if decomp.eof:
                    members += 1
                    chunk = decomp.unused_data
                    decomp = zlib.decompressobj(16 + zlib.MAX_WBITS)
                    pending = False
                else:
                    chunk = b""
    except zlib.error as e:
        raise SourceError(f"Corrupt gzip stream: {e}") from e
    if pending:
        raise SourceError("Truncated gzip stream")
    if not members:
        raise SourceError("Empty archive: no gzip data received")


def iter_text_lines(byte_chunks: Iterable[bytes], encoding: str = "utf-8") -> Iterator[str]:
    """Split a byte stream into text lines; '\\n' and '\\r\\n' endings are removed."""
    decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
    buffer = ""
    for chunk in byte_chunks:
        buffer += decoder.decode(chunk)
        parts = buffer.split("\n")
        buffer = parts.pop()
        for line in parts:
            yield line[:-1] if line.endswith("\r") else line
    buffer += decoder.decode(b"", final=True)
    if buffer:
        yield buffer[:-1] if buffer.endswith("\r") else buffer


class HttpArchiveSource:
    """Streams <base_url>/YYYYMMDD.csv.gz over HTTP.
    Opening the request is retried on connection errors and 5xx; failures after that are SourceError.
    """

    def __init__(self,
                 base_url: Optional[str] = None,
                 session: Optional[requests.Session] = None,
                 timeout: Optional[float] = None,
                 max_retries: Optional[int] = None,
                 logger: Optional[logging.Logger] = None):
        self.base_url = (base_url or SOURCE_URL).rstrip("/")
        self.session = session or requests.Session()
        self.timeout = HTTP_TIMEOUT_SEC if timeout is None else timeout
        self.max_retries = MAX_RETRIES if max_retries is None else max_retries
        self.logger = logger or logging.getLogger("tickloader")

    def url_for(self, day: date) -> str:
        return f"{self.base_url}/{day_token(day)}.csv.gz"

    def _request(self, url: str) -> requests.Response:
        last_exc: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                response = self.session.get(url, stream=True, timeout=self.timeout)
                if response.status_code >= 500:
                    response.close()
                    raise requests.HTTPError(f"{response.status_code} Server Error for url: {url}", response=response)
                if response.status_code >= 400:
                    response.close()
                    raise SourceError(f"HTTP {response.status_code} for {url}")
                return response
            except (requests.ConnectionError, requests.Timeout, requests.HTTPError) as e:
                last_exc = e
                if attempt == self.max_retries:
                    break
                wait = RETRY_BACKOFF_BASE_SEC ** attempt
                self.logger.warning(f"fetch {url} failed (attempt {attempt}/{self.max_retries}): {e}; sleeping {wait:.2f}s")
                time.sleep(wait)
        raise SourceError(f"Could not fetch {url}: {last_exc}") from last_exc

    def _iter_body(self, response: requests.Response, url: str) -> Iterator[bytes]:
        try:
            for chunk in response.iter_content(chunk_size=STREAM_CHUNK_BYTES):
                if chunk:
                    yield chunk
        except requests.RequestException as e:
            raise SourceError(f"Stream for {url} failed: {e}") from e
        finally:
            response.close()

    def open(self, day: date) -> Iterator[bytes]:
        url = self.url_for(day)
        response = self._request(url)
        return self._iter_body(response, url)


class LocalArchiveSource:
    """Reads YYYYMMDD.csv.gz archives from a local directory (offline re-processing)."""

    def __init__(self, directory: str):
        self.directory = directory

    def path_for(self, day: date) -> str:
        return os.path.join(self.directory, f"{day_token(day)}.csv.gz")

    def open(self, day: date) -> Iterator[bytes]:
        path = self.path_for(day)
        if not os.path.isfile(path):
            raise SourceError(f"Archive not found: {path}")
        return self._iter_file(path)

    @staticmethod
    def _iter_file(path: str) -> Iterator[bytes]:
        try:
            with open(path, "rb") as f:
                for chunk in iter(lambda: f.read(STREAM_CHUNK_BYTES), b""):
                    yield chunk
        except OSError as e:
            raise SourceError(f"Failed to read {path}: {e}") from e


def read_day_lines(source, day: date) -> List[str]:
    """Fetch, decompress and split one day's archive, fully buffered."""
    return list(iter_text_lines(iter_gunzipped(source.open(day))))


# --------------------------
# Persistence
# --------------------------

def ticks_to_frame(ticks: Sequence[Tick]) -> pd.DataFrame:
    df = pd.DataFrame([t.as_row() for t in ticks], columns=TICK_COLUMNS)
    return ensure_tick_schema(df)


def ensure_tick_schema(df: pd.DataFrame) -> pd.DataFrame:
    """Enforce column order and dtypes: timestamp int64, amounts float64, the rest str."""
    df = df[TICK_COLUMNS].copy()
    df["timestamp"] = df["timestamp"].astype("int64")
    for c in NUMERIC_COLUMNS:
        df[c] = df[c].astype("float64")
    for c in ("symbol", "side", "tickDirection", "trdMatchID"):
        df[c] = df[c].astype(str)
    return df


def _parquet_engine() -> Optional[str]:
    return "pyarrow" if pq is not None else None


def read_tick_file(path: str) -> pd.DataFrame:
    if path.endswith(".parquet"):
        engine = _parquet_engine()
        if engine is None:
            raise RuntimeError("pyarrow is required to read parquet tick files")
        return pd.read_parquet(path, engine=engine)
    return pd.read_csv(path, dtype={"symbol": str, "side": str, "tickDirection": str, "trdMatchID": str})


class DaySink:
    """Writes all accepted ticks of one day to <data_dir>/YYYYMMDD.<csv|parquet> in a single atomic write."""

    def __init__(self, data_dir: Optional[str] = None, fmt: Optional[str] = None, logger: Optional[logging.Logger] = None):
        self.data_dir = data_dir
        self.fmt = (fmt or OUTPUT_FORMAT).lower()
        if self.fmt not in ("csv", "parquet"):
            raise ConfigError(f"Unsupported output format: {self.fmt}")
        if self.fmt == "parquet" and _parquet_engine() is None:
            raise ConfigError("pyarrow is required for parquet output")
        self.logger = logger or logging.getLogger("tickloader")

    @property
    def directory(self) -> str:
        return self.data_dir or DATA_DIR

    def path_for(self, day: date) -> str:
        return os.path.join(self.directory, f"{day_token(day)}.{self.fmt}")

    def write(self, day: date, ticks: Sequence[Tick]) -> Tuple[str, str]:
        """Returns (path, sha256) of the written file."""
        path = self.path_for(day)
        tmp_path = path + ".tmp"
        try:
            os.makedirs(self.directory, exist_ok=True)
            df = ticks_to_frame(ticks)
            if self.fmt == "parquet":
                df.to_parquet(tmp_path, index=False, compression=PARQUET_COMPRESSION, engine=_parquet_engine())
            else:
                df.to_csv(tmp_path, index=False)
            os.replace(tmp_path, path)
            return path, hash_file_sha256(path)
        except Exception as e:
            self.logger.error(f"Error writing file {path}: {e}")
            try:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
            except OSError:
                pass
            raise PersistenceError(f"Failed to write {path}: {e}") from e


# --------------------------
# Manifest Management
# --------------------------

def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def load_manifest() -> Dict[str, Any]:
    if not os.path.exists(MANIFEST_FILE):
        return {
            "source": SOURCE_URL,
            "columns": TICK_COLUMNS,
            "days": {},
            "created_utc": _utc_now_iso(),
            "updated_utc": _utc_now_iso(),
        }
    with open(MANIFEST_FILE, "r", encoding="utf-8") as f:
        return json.load(f)


def _atomic_write_json(path: str, obj: dict) -> None:
    tmp_path = path + ".tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(obj, f, ensure_ascii=False, indent=2)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


def save_manifest(manifest: Dict[str, Any]):
    manifest["updated_utc"] = _utc_now_iso()
    os.makedirs(os.path.dirname(MANIFEST_FILE) or ".", exist_ok=True)
    _atomic_write_json(MANIFEST_FILE, manifest)


def record_day(manifest: Dict[str, Any], report: "DayReport") -> None:
    manifest.setdefault("days", {})[day_token(report.day)] = {
        # relative to DATA_DIR, so sinks writing elsewhere stay resolvable
        "filename": os.path.relpath(report.path, DATA_DIR) if report.path else None,
        "accepted": report.accepted,
        "rejected": report.rejected,
        "seen": report.seen,
        "reasons": dict(report.reasons),
        "sha256": report.sha256,
        "processed_utc": _utc_now_iso(),
    }


_manifest_lock = threading.Lock()


def commit_day(report: "DayReport") -> None:
    """Record one finished day into the manifest on disk.

    The manifest is reloaded under a lock so runs sharing a data directory keep each other's days.
    """
    with _manifest_lock:
        manifest = load_manifest()
        record_day(manifest, report)
        save_manifest(manifest)


def completed_days(manifest: Dict[str, Any]) -> Set[str]:
    """Day tokens recorded in the manifest whose output file still exists."""
    done = set()
    for token, entry in (manifest.get("days") or {}).items():
        name = entry.get("filename")
        if name and os.path.exists(os.path.join(DATA_DIR, name)):
            done.add(token)
    return done


def verify_manifest(logger: logging.Logger) -> bool:
    """Check every manifest entry against the filesystem: file present, sha256 and row count match."""
    manifest = load_manifest()
    days = manifest.get("days") or {}
    ok = True
    for token in sorted(days):
        entry = days[token]
        name = entry.get("filename")
        if not name:
            logger.error(f"Day {token} missing filename in manifest")
            ok = False
            continue
        path = os.path.join(DATA_DIR, name)
        if not os.path.exists(path):
            logger.error(f"Manifest refers to missing file: {path}")
            ok = False
            continue
        actual_sha = hash_file_sha256(path)
        if actual_sha != entry.get("sha256"):
            logger.error(f"SHA256 mismatch for {name}: manifest={entry.get('sha256')} actual={actual_sha}")
            ok = False
        try:
            df = read_tick_file(path)
        except Exception as e:
            logger.error(f"Failed to read {name}: {e}")
            ok = False
            continue
        if int(entry.get("accepted", -1)) != len(df):
            logger.error(f"Count mismatch for {name}: manifest={entry.get('accepted')} actual={len(df)}")
            ok = False
        if list(df.columns) != TICK_COLUMNS:
            logger.error(f"Column mismatch for {name}: {list(df.columns)}")
            ok = False
    return ok


def build_status() -> Dict[str, Any]:
    manifest = load_manifest()
    days = manifest.get("days") or {}
    tokens = sorted(days)
    return {
        "source": manifest.get("source"),
        "columns": manifest.get("columns"),
        "day_count": len(tokens),
        "first_day": tokens[0] if tokens else None,
        "last_day": tokens[-1] if tokens else None,
        "accepted_total": sum(int(d.get("accepted", 0)) for d in days.values()),
        "rejected_total": sum(int(d.get("rejected", 0)) for d in days.values()),
        "data_dir": os.path.abspath(DATA_DIR),
    }


def status(logger: logging.Logger):
    print(json.dumps(build_status(), indent=2))


# --------------------------
# Day Pipeline
# --------------------------

@dataclass
class DayReport:
    day: date
    accepted: int
    rejected: int
    seen: int
    path: Optional[str] = None
    sha256: Optional[str] = None
    reasons: Dict[str, int] = field(default_factory=dict)


def process_day(day: date,
                source,
                validator: RowValidator,
                sink: DaySink,
                logger: logging.Logger,
                on_action: Optional[Callable[[str], None]] = None,
                show_progress: bool = True) -> DayReport:
    """Download, clean and persist one day. Source and persistence failures are raised."""
    label = day.isoformat()

    def action(text: str):
        if on_action is not None:
            on_action(text)

    action(f"Downloading {label}")
    try:
        lines = read_day_lines(source, day)
    except SourceError as e:
        logger.error(f"Source failure for {label}: {e}")
        raise
    except (requests.RequestException, OSError) as e:
        logger.error(f"Source failure for {label}: {e}")
        raise SourceError(f"Source failure for {label}: {e}") from e

    action(f"Cleaning {label}")
    chunks = max(1, math.ceil(len(lines) / DECODE_CHUNK_LINES))
    detail_bar = tqdm(total=chunks, desc=label, leave=False, disable=not show_progress)

    def progress(_chunk_index: int, skipped: str):
        detail_bar.update(1)
        detail_bar.set_postfix_str(skipped)

    try:
        result = decode_lines(lines, day, validator, logger=logger, progress=progress)
    finally:
        detail_bar.close()
    del lines

    action(f"Inserting {label}")
    path, sha256 = sink.write(day, result.accepted)
    breakdown = ", ".join(f"{k}={v}" for k, v in sorted(result.reasons.items()))
    logger.info(f"{label}: {len(result.accepted)} ticks written to {path}; {result.skipped_label}"
                + (f" ({breakdown})" if breakdown else ""))
    return DayReport(
        day=day,
        accepted=len(result.accepted),
        rejected=result.rejected,
        seen=result.seen,
        path=path,
        sha256=sha256,
        reasons=dict(result.reasons),
    )


# --------------------------
# Range Controller
# --------------------------

@dataclass
class RangeReport:
    start: date
    end: date
    days: List[DayReport] = field(default_factory=list)
    resumed: List[date] = field(default_factory=list)
    failed: List[date] = field(default_factory=list)

    @property
    def accepted(self) -> int:
        return sum(d.accepted for d in self.days)

    @property
    def rejected(self) -> int:
        return sum(d.rejected for d in self.days)

    @property
    def seen(self) -> int:
        return sum(d.seen for d in self.days)


def run_range(start: date,
              end: date,
              logger: Optional[logging.Logger] = None,
              source=None,
              validator: Optional[RowValidator] = None,
              sink: Optional[DaySink] = None,
              resume: bool = False,
              continue_on_error: bool = False,
              show_progress: bool = True) -> RangeReport:
    """Process days [start, end) one after another.

    A SourceError or PersistenceError aborts the remaining range unless continue_on_error is set,
    in which case the day is logged, listed in RangeReport.failed and skipped.
    Days already written stay on disk either way. With resume=True, days present in the
    manifest (and on disk) are not processed again.
    """
    if start >= end:
        raise ConfigError(f"Invalid start or end date: {start.isoformat()} >= {end.isoformat()}")
    logger = logger or logging.getLogger("tickloader")
    source = source if source is not None else HttpArchiveSource(logger=logger)
    validator = validator or RowValidator(parse_accepted_tickers(ACCEPTED_TICKERS))
    sink = sink or DaySink(logger=logger)

    done = completed_days(load_manifest()) if resume else set()
    total_days = (end - start).days
    logger.info(f"Starting range {start.isoformat()} -> {end.isoformat()} ({total_days} day(s))")

    report = RangeReport(start=start, end=end)
    main_bar = tqdm(total=total_days, desc="  Total   ", disable=not show_progress)
    main_bar.set_postfix_str("Initializing")
    try:
        for day in iter_days(start, end):
            if day_token(day) in done:
                logger.info(f"{day.isoformat()}: already in manifest, skipping")
                report.resumed.append(day)
                main_bar.update(1)
                continue
            try:
                day_report = process_day(day, source, validator, sink, logger,
                                         on_action=main_bar.set_postfix_str, show_progress=show_progress)
            except (SourceError, PersistenceError) as e:
                if not continue_on_error:
                    logger.error(f"Aborting range at {day.isoformat()}: {e}")
                    raise
                logger.warning(f"Skipping {day.isoformat()} after failure: {e}")
                report.failed.append(day)
                main_bar.update(1)
                continue
            commit_day(day_report)
            report.days.append(day_report)
            main_bar.update(1)
    finally:
        main_bar.close()

    logger.info(f"Range complete. days={len(report.days)} resumed={len(report.resumed)} failed={len(report.failed)} "
                f"accepted={report.accepted} rejected={report.rejected}")
    return report


# --------------------------
# CLI
# --------------------------

def _parse_args(argv: List[str]):
    import argparse
    p = argparse.ArgumentParser(description="BitMEX daily trade archive loader: download, validate and store clean ticks per day")
    sub = p.add_subparsers(dest="cmd", required=True)

    p.add_argument("--quiet", action="store_true", help="Reduce console logging")
    p.add_argument("--data-dir", default=None, help="Output directory for day files and manifest (default TICK_DATA_DIR or ./data)")

    p_backfill = sub.add_parser("backfill", help="Process a date range [start, end)")
    p_backfill.add_argument("--start", default=START_DATE, help="First day, YYYY-MM-DD (default START_DATE)")
    p_backfill.add_argument("--end", default=END_DATE, help="Day after the last one, YYYY-MM-DD (default END_DATE)")
    p_backfill.add_argument("--tickers", default=None, help="Accepted symbols as JSON list or comma separated (default ACCEPTED_TICKERS; empty = all)")
    p_backfill.add_argument("--format", choices=["csv", "parquet"], default=OUTPUT_FORMAT)
    p_backfill.add_argument("--source-dir", default=None, help="Read YYYYMMDD.csv.gz archives from this directory instead of HTTP")
    p_backfill.add_argument("--resume", action="store_true", help="Skip days already recorded in the manifest")
    p_backfill.add_argument("--skip-failed-days", action="store_true", help="Log and skip a failed day instead of aborting the range")
    p_backfill.add_argument("--no-progress", action="store_true", help="Disable progress bars")

    sub.add_parser("status", help="Print current status from manifest")
    sub.add_parser("audit", help="Verify manifest against the day files. Exits non-zero on failure")

    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    configure_paths(args.data_dir)
    logger = setup_logging(verbose=not args.quiet)

    try:
        if args.cmd == "backfill":
            try:
                start, end = parse_range(args.start, args.end)
                tickers = parse_accepted_tickers(ACCEPTED_TICKERS if args.tickers is None else args.tickers)
                sink = DaySink(fmt=args.format, logger=logger)
            except ConfigError as e:
                logger.error(f"Startup failed: {e}")
                return 2
            source = LocalArchiveSource(args.source_dir) if args.source_dir else HttpArchiveSource(logger=logger)
            try:
                run_range(start, end, logger=logger, source=source, validator=RowValidator(tickers), sink=sink,
                          resume=args.resume, continue_on_error=args.skip_failed_days,
                          show_progress=not args.no_progress)
            except LoaderError as e:
                logger.error(f"Run aborted: {e}")
                return 1
        elif args.cmd == "status":
            status(logger)
        elif args.cmd == "audit":
            if verify_manifest(logger):
                logger.info("AUDIT OK: manifest parity verified.")
            else:
                logger.error("AUDIT FAILED.")
                return 3
    except KeyboardInterrupt:
        logger.info("Interrupted by user. Exiting.")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
