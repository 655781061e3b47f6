"""
Publishing Queue API Endpoints

Operational surface over the queue service: enqueue, inspect, override,
retry/cancel, trigger a tick, and look at the rate limiter and breakers.
"""

from typing import Any, Dict, List, Optional
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from publisher.core.errors import UnknownPlatformError
from publisher.models.publishing_queue import PublishingStatus
from publisher.services.publishing_queue import PublishingQueueService

router = APIRouter()


def get_queue(request: Request) -> PublishingQueueService:
    queue = getattr(request.app.state, "publishing_queue", None)
    if queue is None:
        raise HTTPException(status_code=503, detail="Publishing queue not initialized")
    return queue


# ============== SCHEMAS ==============


class QueueItemCreate(BaseModel):
    product_id: str
    platform: str
    priority: int = Field(default=5, ge=1, le=10)
    scheduled_for: Optional[datetime] = None
    safeguards_passed: bool = False
    trademark_cleared: bool = False
    quality_score: Optional[float] = Field(default=None, ge=0, le=100)


class QueueBatchCreate(BaseModel):
    product_id: str
    platforms: List[str] = Field(min_length=1)
    priority: int = Field(default=5, ge=1, le=10)
    scheduled_for: Optional[datetime] = None
    safeguards_passed: bool = False
    trademark_cleared: bool = False
    quality_score: Optional[float] = Field(default=None, ge=0, le=100)


class QueueStatusUpdate(BaseModel):
    status: PublishingStatus
    error_message: Optional[str] = None
    external_id: Optional[str] = None
    external_url: Optional[str] = None
    published_at: Optional[datetime] = None


class QueueItemOut(BaseModel):
    id: str
    product_id: str
    platform: str
    status: PublishingStatus
    priority: int
    retry_count: int
    max_retries: int
    scheduled_for: Optional[datetime]
    external_id: Optional[str]
    external_url: Optional[str]
    error_message: Optional[str]
    safeguards_passed: bool
    trademark_cleared: bool
    quality_score: Optional[float]
    started_at: Optional[datetime]
    published_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


# ============== QUEUE ENDPOINTS ==============


@router.get("", response_model=List[QueueItemOut])
async def list_queue(
    status: Optional[PublishingStatus] = None,
    limit: int = Query(default=50, ge=1, le=500),
    queue: PublishingQueueService = Depends(get_queue),
) -> Any:
    """Items with the given status, or the next due items when no status is given."""
    if status is not None:
        return await queue.get_queue_by_status(status, limit=limit)
    return await queue.get_next_items(limit=limit)


@router.get("/stats")
async def queue_stats(queue: PublishingQueueService = Depends(get_queue)) -> Any:
    return {
        "queue": await queue.get_stats(),
        "processor": {
            "running": queue.is_running,
            "is_processing": queue.is_processing,
            **queue.metrics.get_all_metrics(),
        },
    }


@router.get("/product/{product_id}", response_model=List[QueueItemOut])
async def product_queue(product_id: str, queue: PublishingQueueService = Depends(get_queue)) -> Any:
    return await queue.get_product_queue(product_id)


@router.get("/rate-limit/{platform}")
async def rate_limit_status(
    platform: str,
    endpoint: str = "default",
    queue: PublishingQueueService = Depends(get_queue),
) -> Any:
    info = await queue.check_rate_limit(platform, endpoint)
    return info.to_dict()


@router.get("/circuit-breakers")
async def circuit_breakers(queue: PublishingQueueService = Depends(get_queue)) -> Dict[str, Any]:
    return queue.get_circuit_breaker_stats()


@router.post("/circuit-breakers/{name}/reset")
async def reset_circuit_breaker(name: str, queue: PublishingQueueService = Depends(get_queue)) -> Any:
    if not queue.reset_circuit_breaker(name):
        raise HTTPException(status_code=404, detail=f"No circuit breaker named {name}")
    return {"name": name, "state": "closed"}


@router.post("/process")
async def process_now(queue: PublishingQueueService = Depends(get_queue)) -> Any:
    """Run one processing tick immediately."""
    if queue.is_processing:
        raise HTTPException(status_code=409, detail="A processing tick is already running")
    result = await queue.process_pending_items()
    return result.to_dict()


@router.post("", response_model=QueueItemOut, status_code=201)
async def add_to_queue(item_in: QueueItemCreate, queue: PublishingQueueService = Depends(get_queue)) -> Any:
    try:
        return await queue.add_to_queue(**item_in.model_dump())
    except UnknownPlatformError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/batch", response_model=List[QueueItemOut], status_code=201)
async def add_batch_to_queue(batch_in: QueueBatchCreate, queue: PublishingQueueService = Depends(get_queue)) -> Any:
    try:
        return await queue.add_batch_to_queue(**batch_in.model_dump())
    except UnknownPlatformError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{item_id}", response_model=QueueItemOut)
async def get_queue_item(item_id: str, queue: PublishingQueueService = Depends(get_queue)) -> Any:
    item = await queue.get_item(item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Queue item not found")
    return item


@router.patch("/{item_id}/status", response_model=QueueItemOut)
async def update_queue_item_status(
    item_id: str,
    update: QueueStatusUpdate,
    queue: PublishingQueueService = Depends(get_queue),
) -> Any:
    """Operator override of an item's status."""
    item = await queue.update_status(item_id, **update.model_dump())
    if not item:
        raise HTTPException(status_code=404, detail="Queue item not found")
    return item


@router.post("/{item_id}/retry")
async def retry_queue_item(item_id: str, queue: PublishingQueueService = Depends(get_queue)) -> Any:
    if not await queue.retry_item(item_id):
        raise HTTPException(status_code=400, detail="Only failed items can be retried")
    return {"id": item_id, "status": PublishingStatus.PENDING.value}


@router.delete("/{item_id}")
async def cancel_queue_item(item_id: str, queue: PublishingQueueService = Depends(get_queue)) -> Any:
    if not await queue.cancel_item(item_id):
        raise HTTPException(status_code=400, detail="Only pending or failed items can be cancelled")
    return {"id": item_id, "status": PublishingStatus.REJECTED.value}
