"""
StockLens - Main FastAPI Application

PURPOSE: FastAPI routes, endpoints, and application setup
SCOPE: HTTP API over the capture workflow, receipts, projections and price cache
DEPENDENCIES: FastAPI, all stocklens modules
"""

import logging
import os
import uuid
from datetime import datetime
from typing import List, Optional

import aiofiles
import aiofiles.os
from fastapi import FastAPI, File, Form, HTTPException, Query, UploadFile

from .cache import TimeSeriesCache
from .config import config
from .database import DatabaseManager
from .events import RECEIPTS_CHANGED, EventBus
from .exceptions import InvalidAmountError, PersistenceError, WorkflowStateError
from .managers import ReceiptManager
from .market_data import PriceHistoryService
from .models import CapturedPhoto
from .ocr_processor import OCRProcessingService
from .presets import PREFETCH_TICKERS, STOCK_PRESETS
from .projections import ProjectionService
from .validators import sanitize_form_data, validate_receipt_data
from .workflow import CaptureState, CaptureWorkflow

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(title="StockLens")

# Initialize service instances
event_bus = EventBus()
db_manager = DatabaseManager(config.DB_FILE)
receipt_manager = ReceiptManager(config.DB_FILE)
price_cache = TimeSeriesCache(config.DB_FILE)
history_service = PriceHistoryService(price_cache, event_bus=event_bus)
projection_service = ProjectionService(history_service)
ocr_service = OCRProcessingService()
workflow = CaptureWorkflow(receipt_manager, ocr_service, event_bus)


@app.on_event("startup")
async def startup_event():
    """Initialize the application on startup."""
    await db_manager.initialize_database()
    logger.info("Database initialized successfully.")

    removed = await history_service.prune_cache()
    if removed:
        logger.info(f"Pruned {removed} stale price cache entries")
    history_service.ensure_prefetch()


async def remove_upload(photo_uri: str) -> None:
    """Delete an uploaded photo. URIs outside the upload directory are left alone."""
    path = photo_uri[len('file://'):] if photo_uri.startswith('file://') else photo_uri
    if os.path.dirname(os.path.abspath(path)) != os.path.abspath(config.UPLOAD_DIR):
        return
    try:
        await aiofiles.os.remove(path)
        logger.info(f"Removed upload {path}")
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove upload {path}: {e}")


# ============================================================================
# CAPTURE WORKFLOW ENDPOINTS
# ============================================================================

@app.get("/capture")
async def get_capture():
    """Current capture state, pending draft and decision."""
    return workflow.snapshot()


@app.post("/capture")
async def capture_receipt(file: UploadFile = File(...)):
    """Store an uploaded receipt photo, run OCR and return the decision."""
    if file.content_type and not file.content_type.startswith('image/'):
        raise HTTPException(status_code=400, detail="Only image uploads are supported")

    image_bytes = await file.read()
    if not image_bytes:
        raise HTTPException(status_code=400, detail="Empty upload")

    if workflow.state is not CaptureState.IDLE:
        raise HTTPException(status_code=409, detail="A capture is already in progress")

    os.makedirs(config.UPLOAD_DIR, exist_ok=True)
    extension = os.path.splitext(file.filename or '')[1] or '.jpg'
    image_path = os.path.join(config.UPLOAD_DIR, f"{uuid.uuid4()}{extension}")
    async with aiofiles.open(image_path, mode='wb') as f:
        await f.write(image_bytes)
    photo = CapturedPhoto(uri=f"file://{image_path}", data=image_bytes)

    # Another upload may have started while this one was being written
    if workflow.state is not CaptureState.IDLE:
        await remove_upload(photo.uri)
        raise HTTPException(status_code=409, detail="A capture is already in progress")

    # No await between the check above and start_capture's own idle check,
    # so a None from here on means the capture was discarded mid-flight
    pending = await workflow.start_capture(photo)
    decision = await workflow.run_ocr() if pending is not None else None
    if decision is None:
        await remove_upload(photo.uri)
        raise HTTPException(status_code=410, detail="Capture was discarded before OCR finished")
    return workflow.snapshot()


@app.post("/capture/confirm")
async def confirm_capture():
    """Save the suggested amount (zero when none was detected)."""
    try:
        record = await workflow.confirm()
    except WorkflowStateError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=e.message)
    return record.to_dict()


@app.post("/capture/manual/begin")
async def begin_manual_entry():
    try:
        prefill = workflow.begin_manual_entry()
    except WorkflowStateError as e:
        raise HTTPException(status_code=409, detail=e.message)
    return {"state": workflow.state.value, "prefill": prefill}


@app.post("/capture/manual/cancel")
async def cancel_manual_entry():
    try:
        workflow.cancel_manual_entry()
    except WorkflowStateError as e:
        raise HTTPException(status_code=409, detail=e.message)
    return workflow.snapshot()


@app.post("/capture/manual")
async def submit_manual_amount(amount: str = Form(...)):
    """Save a typed amount."""
    try:
        record = await workflow.submit_manual_amount(amount)
    except InvalidAmountError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except WorkflowStateError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=e.message)
    return record.to_dict()


@app.post("/capture/rescan")
async def rescan_capture():
    """Discard the draft so a new photo can be taken."""
    pending = workflow.pending
    removed = await workflow.rescan()
    if pending is not None:
        await remove_upload(pending.photo.uri)
    return {"state": workflow.state.value, "draft_removed": removed}


@app.post("/capture/cancel")
async def cancel_capture():
    pending = workflow.pending
    removed = await workflow.cancel()
    if pending is not None:
        await remove_upload(pending.photo.uri)
    return {"state": workflow.state.value, "draft_removed": removed}


# ============================================================================
# RECEIPT ENDPOINTS
# ============================================================================

@app.get("/receipts")
async def get_receipts(user_id: str = Query(None)):
    """Get all receipts for a user, most recent first."""
    receipts = await receipt_manager.list_by_user(user_id or config.DEFAULT_USER_ID)
    return [receipt.to_dict() for receipt in receipts]


@app.get("/receipts/unsynced")
async def get_unsynced_receipts(user_id: str = Query(None)):
    receipts = await receipt_manager.list_unsynced(user_id or config.DEFAULT_USER_ID)
    return [receipt.to_dict() for receipt in receipts]


@app.get("/receipts/{receipt_id}")
async def get_receipt(receipt_id: int):
    receipt = await receipt_manager.get_by_id(receipt_id)
    if not receipt:
        raise HTTPException(status_code=404, detail="Receipt not found")
    return receipt.to_dict()


@app.put("/receipts/{receipt_id}")
async def update_receipt(
    receipt_id: int,
    total_amount: Optional[float] = Form(None),
    user_id: Optional[str] = Form(None)
):
    """Correct a stored receipt's amount or owner."""
    form_data = sanitize_form_data({'total_amount': total_amount, 'user_id': user_id})
    update_data = {key: value for key, value in form_data.items() if value is not None}

    is_valid, validation_errors = validate_receipt_data(update_data)
    if not is_valid:
        raise HTTPException(status_code=400, detail={"errors": validation_errors})

    if update_data:
        update_data['synced'] = False
    success = await receipt_manager.update(receipt_id, update_data)
    if not success:
        raise HTTPException(status_code=404, detail="Receipt not found")
    event_bus.publish(RECEIPTS_CHANGED, {'id': receipt_id})
    return {"status": "success", "message": "Receipt updated"}


@app.post("/receipts/{receipt_id}/synced")
async def mark_receipt_synced(receipt_id: int):
    success = await receipt_manager.mark_as_synced(receipt_id)
    if not success:
        raise HTTPException(status_code=404, detail="Receipt not found")
    event_bus.publish(RECEIPTS_CHANGED, {'id': receipt_id})
    return {"status": "success", "message": "Receipt marked as synced"}


@app.delete("/receipts/{receipt_id}")
async def delete_receipt(receipt_id: int):
    receipt = await receipt_manager.get_by_id(receipt_id)
    success = await receipt_manager.delete(receipt_id)
    if not success:
        raise HTTPException(status_code=404, detail=f"Receipt with ID {receipt_id} not found.")
    if receipt and receipt.image_uri:
        await remove_upload(receipt.image_uri)
    event_bus.publish(RECEIPTS_CHANGED, {'id': receipt_id, 'deleted': True})
    return {"status": "success", "message": "Receipt deleted"}


# ============================================================================
# PROJECTION ENDPOINTS
# ============================================================================

@app.get("/presets")
async def get_presets():
    return [
        {"name": preset.name, "ticker": preset.ticker, "return_rate": preset.return_rate}
        for preset in STOCK_PRESETS
    ]


@app.get("/projection/{ticker}")
async def get_projection(ticker: str, principal: float = Query(...), years: float = Query(5)):
    """What principal would be worth after `years` invested in ticker."""
    if principal < 0 or years <= 0:
        raise HTTPException(status_code=400, detail="Principal must be >= 0 and years > 0")
    projection = await projection_service.project_future_value(principal, ticker, years)
    return projection.to_dict()


@app.get("/projections")
async def get_projections(
    principal: float = Query(...),
    years: float = Query(5),
    tickers: List[str] = Query(None)
):
    """Projections across several tickers, the presets by default."""
    if principal < 0 or years <= 0:
        raise HTTPException(status_code=400, detail="Principal must be >= 0 and years > 0")
    projections = await projection_service.project_many(principal, tickers or PREFETCH_TICKERS, years)
    return {ticker: projection.to_dict() for ticker, projection in projections.items()}


# ============================================================================
# CACHE MAINTENANCE ENDPOINTS
# ============================================================================

@app.post("/cache/prune")
async def prune_cache(days: int = Query(None)):
    removed = await history_service.prune_cache(days)
    return {"removed": removed}


@app.post("/cache/prefetch")
async def prefetch_cache():
    """Start the preset warm-up if it has not run yet."""
    task = history_service.ensure_prefetch()
    return {"status": "done" if task.done() else "running"}


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    return {"status": "healthy", "timestamp": datetime.now().isoformat()}


# ============================================================================
# APPLICATION ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
