"""ARQ job enqueueing utilities.

WHAT:
    Async helper for FastAPI routes to enqueue product sync jobs.

WHY:
    Routes only flip the store's sync status to `queued` and return; the
    worker does the paging. A stable job id per store keeps a second click
    from queueing a duplicate sync while one is pending.

USAGE:
    from storelink.workers.arq_enqueue import enqueue_product_sync

    await enqueue_product_sync(store.id)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from uuid import UUID

from arq import create_pool
from arq.connections import ArqRedis

from storelink.workers.arq_worker import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)

_arq_pool: Optional[ArqRedis] = None


async def get_arq_pool() -> ArqRedis:
    """Get or create the ARQ Redis pool."""
    global _arq_pool
    if _arq_pool is None:
        logger.info("[ARQ-ENQUEUE] Creating new Redis pool...")
        _arq_pool = await create_pool(get_redis_settings())
    return _arq_pool


async def reset_arq_pool() -> None:
    global _arq_pool
    if _arq_pool is not None:
        await _arq_pool.close()
        _arq_pool = None
        logger.info("[ARQ-ENQUEUE] Redis pool reset")


async def enqueue_product_sync(store_id: str | UUID) -> Dict[str, Any]:
    """Enqueue a full product sync for a store.

    Returns:
        Dict with job_id and status ("enqueued" or "already_queued").
    """
    pool = await get_arq_pool()
    job = await pool.enqueue_job(
        "sync_store_products",
        str(store_id),
        _job_id=f"product-sync:{store_id}",
        _queue_name=QUEUE_NAME,
    )

    if job:
        logger.info("[ARQ] Enqueued product sync %s for store %s", job.job_id, store_id)
        return {"job_id": job.job_id, "status": "enqueued"}
    logger.info("[ARQ] Product sync already queued for store %s", store_id)
    return {"job_id": None, "status": "already_queued"}
