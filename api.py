import logging
import threading
from typing import List, Optional
from fastapi import FastAPI, BackgroundTasks, HTTPException
from pydantic import BaseModel

from bitmex_tick_loader import (
    setup_logging,
    run_range as _run_range,
    parse_range,
    parse_accepted_tickers,
    build_status,
    verify_manifest,
    ConfigError,
    LoaderError,
    DaySink,
    RowValidator,
    HttpArchiveSource,
    LocalArchiveSource,
    ACCEPTED_TICKERS,
)

app = FastAPI(title="BitMEX Tick Loader API")

# One backfill at a time; released by the background task
_backfill_lock = threading.Lock()


class BackfillRequest(BaseModel):
    start: str                           # YYYY-MM-DD, inclusive
    end: str                             # YYYY-MM-DD, exclusive
    tickers: Optional[List[str]] = None  # None -> ACCEPTED_TICKERS; [] -> all symbols
    format: Optional[str] = None         # 'csv' or 'parquet'
    source_dir: Optional[str] = None     # local archives instead of HTTP
    resume: bool = False
    skip_failed_days: bool = False


def _get_logger() -> logging.Logger:
    # Never sweep temp files here: a running backfill may own them
    logger = logging.getLogger("tickloader")
    if not logger.handlers:
        logger = setup_logging(verbose=True, sweep=False)
    return logger


@app.on_event("startup")
async def on_startup():
    setup_logging(verbose=True)


@app.post("/backfill")
async def backfill_endpoint(req: BackfillRequest, background_tasks: BackgroundTasks):
    logger = _get_logger()
    # Startup-level errors are reported before anything is scheduled
    try:
        start, end = parse_range(req.start, req.end)
        tickers = parse_accepted_tickers(ACCEPTED_TICKERS if req.tickers is None else req.tickers)
        sink = DaySink(fmt=req.format, logger=logger)
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not _backfill_lock.acquire(blocking=False):
        raise HTTPException(status_code=409, detail="A backfill is already running")

    def task():
        try:
            source = LocalArchiveSource(req.source_dir) if req.source_dir else HttpArchiveSource(logger=logger)
            _run_range(
                start,
                end,
                logger=logger,
                source=source,
                validator=RowValidator(tickers),
                sink=sink,
                resume=req.resume,
                continue_on_error=req.skip_failed_days,
                show_progress=False,
            )
        except LoaderError as e:
            logger.error(f"Background backfill aborted: {e}")
        finally:
            _backfill_lock.release()

    background_tasks.add_task(task)
    return {"status": "scheduled", "start": start.isoformat(), "end": end.isoformat(), "days": (end - start).days}


@app.get("/status")
async def status_endpoint():
    return build_status()


@app.get("/audit")
async def audit_endpoint():
    return {"ok": verify_manifest(_get_logger())}


@app.get("/health")
async def health():
    return {"status": "ok"}
