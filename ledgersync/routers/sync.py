"""
Sync router - Trigger syncs and monitor sync jobs, import batches and token health.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from ledgersync.engine import SyncEngine
from ledgersync.errors import IntegrationNotFoundError
from ledgersync.models.enums import SyncJobStatus, SyncJobType
from ledgersync.models.sync_job import SyncOptions
from ledgersync.routers.dependencies import get_engine, get_tenant_id, get_user_id
from ledgersync.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


class TriggerSyncRequest(BaseModel):
    """Request to start a sync."""

    job_type: SyncJobType = SyncJobType.MANUAL
    options: SyncOptions = Field(default_factory=SyncOptions)
    priority: Optional[int] = Field(default=None, ge=0, le=100)


class CancelSyncRequest(BaseModel):
    reason: Optional[str] = None


@router.post("/integrations/{integration_id}/sync", status_code=status.HTTP_202_ACCEPTED)
def trigger_sync(
    integration_id: str,
    request: TriggerSyncRequest,
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
    engine: SyncEngine = Depends(get_engine),
):
    """
    Start a sync for an integration.
    Returns as soon as the sync job is queued.
    """
    result = engine.orchestrator.trigger_sync(
        integration_id,
        tenant_id,
        user_id=user_id,
        job_type=request.job_type,
        options=request.options,
        priority=request.priority,
    )
    return {
        "success": True,
        "data": {
            "sync_job": result.sync_job.model_dump(mode="json"),
            "job_id": result.job_id,
        },
    }


@router.get("/sync-jobs")
async def list_sync_jobs(
    integration_id: Optional[str] = None,
    status_filter: Optional[List[SyncJobStatus]] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    engine: SyncEngine = Depends(get_engine),
):
    jobs = engine.orchestrator.list_sync_jobs(
        tenant_id, integration_id=integration_id, statuses=status_filter, limit=limit
    )
    return {
        "success": True,
        "data": [job.model_dump(mode="json") for job in jobs],
        "count": len(jobs),
    }


@router.get("/sync-jobs/{sync_job_id}")
async def get_sync_job(
    sync_job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    engine: SyncEngine = Depends(get_engine),
):
    sync_job = engine.orchestrator.get_sync_job(sync_job_id, tenant_id)
    data = sync_job.model_dump(mode="json")
    data["duration_seconds"] = sync_job.duration_seconds()
    data["entity_success_rate"] = sync_job.entity_success_rate()
    return {"success": True, "data": data}


@router.post("/sync-jobs/{sync_job_id}/cancel")
async def cancel_sync_job(
    sync_job_id: str,
    request: Optional[CancelSyncRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
    engine: SyncEngine = Depends(get_engine),
):
    sync_job = engine.orchestrator.cancel_sync_job(
        sync_job_id,
        tenant_id,
        user_id=user_id,
        reason=request.reason if request else None,
    )
    return {"success": True, "data": sync_job.model_dump(mode="json")}


@router.post("/sync-jobs/{sync_job_id}/retry", status_code=status.HTTP_202_ACCEPTED)
def retry_sync_job(
    sync_job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
    engine: SyncEngine = Depends(get_engine),
):
    result = engine.orchestrator.retry_sync_job(sync_job_id, tenant_id, user_id=user_id)
    return {
        "success": True,
        "data": {
            "sync_job": result.sync_job.model_dump(mode="json"),
            "job_id": result.job_id,
        },
    }


@router.get("/sync-jobs/{sync_job_id}/import-batches")
async def list_import_batches(
    sync_job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    engine: SyncEngine = Depends(get_engine),
):
    """Import batches of a sync job, oldest first."""
    engine.orchestrator.get_sync_job(sync_job_id, tenant_id)
    batches = engine.storage.list_import_batches(tenant_id=tenant_id, sync_job_id=sync_job_id)
    return {
        "success": True,
        "data": [batch.model_dump(mode="json") for batch in batches],
        "count": len(batches),
    }


@router.get("/integrations/{integration_id}/token-health")
async def get_token_health(
    integration_id: str,
    tenant_id: str = Depends(get_tenant_id),
    engine: SyncEngine = Depends(get_engine),
):
    integration = engine.storage.get_integration(integration_id)
    if integration is None or integration.tenant_id != tenant_id:
        raise IntegrationNotFoundError(
            f"Integration {integration_id} not found",
            context={"integration_id": integration_id},
        )
    health = engine.token_manager.check_health(integration)
    return {
        "success": True,
        "data": {
            "integration_id": integration.id,
            "status": integration.status.value,
            "sync_health": integration.sync_health.value,
            "health_score": integration.health_score(),
            "last_sync_at": integration.last_sync_at.isoformat() if integration.last_sync_at else None,
            "last_refresh_error": integration.last_refresh_error,
            "token": health.model_dump(mode="json"),
        },
    }


@router.get("/stats")
async def get_sync_statistics(
    integration_id: Optional[str] = None,
    tenant_id: str = Depends(get_tenant_id),
    engine: SyncEngine = Depends(get_engine),
):
    stats = engine.orchestrator.get_sync_statistics(tenant_id, integration_id=integration_id)
    return {
        "success": True,
        "data": stats.model_dump(mode="json"),
        "queues": engine.dispatcher.stats(),
    }
