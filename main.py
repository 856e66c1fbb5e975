import logging
import time
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, HTTPException, Path, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import schemas
from config import LOG_FORMAT, LOG_LEVEL, PORT, TrackerConfig
from crud import DuplicatePaymentError
from ledger import LedgerError
from tracker import YieldTracker

# --- LOGGING AND APP SETUP ---
logging.basicConfig(
    level=LOG_LEVEL,
    format=LOG_FORMAT
)
logger = logging.getLogger(__name__)

SECONDS_PER_30_DAYS = 30 * 24 * 60 * 60

AddressPath = Annotated[str, Path(pattern=schemas.ADDRESS_PATTERN)]

@asynccontextmanager
async def lifespan(app: FastAPI):
    config = TrackerConfig.from_env()
    logger.info("USDs Yield Tracker starting up...")
    logger.info(f"Network: {config.network}")
    logger.info(f"RPC URL: {config.rpc_url}")
    logger.info(f"Database: {config.database_url}")
    tracker = YieldTracker(config)
    await tracker.start()
    app.state.tracker = tracker
    logger.info("Yield tracker is running in the background.")
    yield
    logger.info("USDs Yield Tracker shutting down...")
    tracker.close()
    logger.info("Yield tracker has been shut down.")

app = FastAPI(
    lifespan=lifespan,
    title="USDs Yield Tracker",
    description="Track auto-yield earnings from Sperax USDs payments",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

def get_tracker(request: Request) -> YieldTracker:
    return request.app.state.tracker

@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    logger.error(f"Ledger unavailable while serving {request.url.path}: {exc}")
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": "Ledger unavailable"})

# --- API ENDPOINTS ---
@app.get("/")
def root():
    return {
        "name": "USDs Yield Tracker",
        "version": "1.0.0",
        "endpoints": {
            "health": "GET /api/health",
            "yieldInfo": "GET /api/yield/{address}",
            "yieldHistory": "GET /api/yield/{address}/history",
            "payments": "GET /api/yield/{address}/payments",
            "yieldBetween": "GET /api/yield/{address}/between?from=&to=",
            "apy": "GET /api/apy",
            "latestRebase": "GET /api/rebase/latest",
            "rebaseHistory": "GET /api/rebase/history",
            "trackPayment": "POST /api/track",
            "estimate": "GET /api/estimate?balance=100&days=30",
            "contractState": "GET /api/contract/state",
            "payment": "GET /api/payment/{id}",
            "paymentYield": "GET /api/payment/{id}/yield",
        },
    }

@app.get("/api/health", response_model=schemas.TrackerStatus, tags=["Status"])
async def health(tracker: YieldTracker = Depends(get_tracker)):
    return await tracker.get_status()

@app.get("/api/yield/{address}", response_model=schemas.YieldInfo, tags=["Yield"])
async def read_yield_info(address: AddressPath, tracker: YieldTracker = Depends(get_tracker)):
    return await tracker.get_yield_info(address)

@app.get("/api/yield/{address}/history", response_model=schemas.YieldHistory, tags=["Yield"])
async def read_yield_history(
    address: AddressPath,
    limit: int = Query(100, ge=1, le=1000),
    tracker: YieldTracker = Depends(get_tracker),
):
    return await tracker.get_yield_history(address, limit)

@app.get("/api/yield/{address}/payments", response_model=schemas.PaymentList, tags=["Yield"])
async def read_payments(address: AddressPath, tracker: YieldTracker = Depends(get_tracker)):
    payments = await tracker.get_payments(address)
    return schemas.PaymentList(address=address.lower(), payments=payments, count=len(payments))

@app.get("/api/yield/{address}/between", response_model=schemas.YieldBetween, tags=["Yield"])
async def read_yield_between(
    address: AddressPath,
    from_timestamp: int = Query(..., alias="from", ge=0),
    to_timestamp: Optional[int] = Query(None, alias="to", ge=0),
    tracker: YieldTracker = Depends(get_tracker),
):
    to = to_timestamp if to_timestamp is not None else int(time.time())
    if to < from_timestamp:
        raise HTTPException(status_code=400, detail="'to' must not be before 'from'")
    return await tracker.calculate_yield_between(address, from_timestamp, to)

@app.get("/api/apy", response_model=schemas.APYInfo, tags=["Rebase"])
async def read_apy(tracker: YieldTracker = Depends(get_tracker)):
    return await tracker.get_apy_info()

@app.get("/api/rebase/latest", response_model=schemas.RebaseEvent, tags=["Rebase"])
async def read_latest_rebase(tracker: YieldTracker = Depends(get_tracker)):
    event = await tracker.get_latest_rebase()
    if event is None:
        raise HTTPException(status_code=404, detail="No rebase events tracked yet")
    return event

@app.get("/api/rebase/history", response_model=schemas.RebaseHistory, tags=["Rebase"])
async def read_rebase_history(
    from_timestamp: Optional[int] = Query(None, alias="from", ge=0),
    to_timestamp: Optional[int] = Query(None, alias="to", ge=0),
    limit: int = Query(100, ge=1, le=1000),
    tracker: YieldTracker = Depends(get_tracker),
):
    now = int(time.time())
    start = from_timestamp if from_timestamp is not None else now - SECONDS_PER_30_DAYS
    events = await tracker.get_rebase_events(start, to_timestamp, limit)
    return schemas.RebaseHistory(
        events=events,
        count=len(events),
        from_timestamp=start,
        to_timestamp=to_timestamp if to_timestamp is not None else now,
    )

@app.post("/api/track", response_model=schemas.TrackedPayment, status_code=201, tags=["Payments"])
async def track_payment(request: schemas.TrackPaymentRequest, tracker: YieldTracker = Depends(get_tracker)):
    try:
        return await tracker.track_payment(request)
    except DuplicatePaymentError as e:
        raise HTTPException(status_code=409, detail=str(e))

@app.get("/api/estimate", response_model=schemas.YieldEstimate, tags=["Yield"])
async def estimate_yield(
    balance: str = Query(..., pattern=schemas.AMOUNT_PATTERN),
    days: int = Query(..., ge=0, le=36500),
    tracker: YieldTracker = Depends(get_tracker),
):
    return await tracker.estimate_future_yield(balance, days)

@app.get("/api/contract/state", response_model=schemas.ContractState, tags=["Contract"])
async def read_contract_state(tracker: YieldTracker = Depends(get_tracker)):
    return await tracker.get_contract_state()

@app.get("/api/payment/{payment_id}", response_model=schemas.TrackedPayment, tags=["Payments"])
async def read_payment(payment_id: str, tracker: YieldTracker = Depends(get_tracker)):
    payment = await tracker.get_payment(payment_id)
    if payment is None:
        raise HTTPException(status_code=404, detail="Payment not found")
    return payment

@app.get("/api/payment/{payment_id}/yield", response_model=schemas.PaymentYield, tags=["Payments"])
async def read_payment_yield(payment_id: str, tracker: YieldTracker = Depends(get_tracker)):
    result = await tracker.calculate_payment_yield(payment_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Payment not found")
    return result


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=PORT)
