from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse, StreamingResponse
from webpilotx.database.supabase_client import get_supabase
from webpilotx.modules.deployments.schemas import DeploymentResponse
from webpilotx.modules.deployments.service import DeploymentService
from webpilotx.modules.deployments.log_store import DeploymentLog
from webpilotx.modules.deployments.log_stream import stream_deployment_log
from webpilotx.modules.deployments import process_registry, worker_registry
from supabase import Client
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/deployments", tags=["deployments"])

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


def get_deployment_service(supabase: Client = Depends(get_supabase)) -> DeploymentService:
    return DeploymentService(supabase)


@router.get("/{deployment_id}", response_model=DeploymentResponse)
async def get_deployment(
    deployment_id: int,
    service: DeploymentService = Depends(get_deployment_service)
):
    """Get deployment by ID"""
    return service.get_deployment_by_id(deployment_id)


@router.get("/{deployment_id}/logs/stream")
async def stream_deployment_logs(deployment_id: int, request: Request):
    """
    Stream a deployment's build log.
    A finished log comes back whole; a running one is streamed as it grows and
    the response ends after the completion sentinel.
    """
    log = DeploymentLog(deployment_id)
    if not log.exists():
        raise HTTPException(status_code=404, detail="Deployment log not found")

    if log.is_complete():
        logger.info(f"Deployment {deployment_id} already completed.")
        return PlainTextResponse(log.read())

    return StreamingResponse(
        stream_deployment_log(deployment_id, request),
        media_type="text/plain; charset=utf-8",
        headers=STREAM_HEADERS,
    )


@router.post("/{deployment_id}/cancel", response_model=DeploymentResponse)
def cancel_deployment(
    deployment_id: int,
    service: DeploymentService = Depends(get_deployment_service)
):
    """Cancel an in-progress deployment. Terminates its current child process; the worker records exit code 130."""
    deployment = service.get_deployment_by_id(deployment_id)
    if deployment.exit_code is not None or not worker_registry.request_cancel(deployment_id):
        raise HTTPException(status_code=400, detail="Deployment cannot be cancelled")
    DeploymentLog(deployment_id).line("Cancellation requested.")
    process_registry.terminate(deployment_id)
    worker_registry.join(deployment_id, timeout=10)
    return service.get_deployment_by_id(deployment_id)
