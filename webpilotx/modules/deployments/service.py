from supabase import Client
from webpilotx.modules.deployments.schemas import (
    DeploymentResponse, STATUS_PENDING, STATUS_RUNNING, STATUS_SUCCEEDED, STATUS_FAILED
)
from webpilotx.modules.deployments import worker_registry
from webpilotx.modules.deployments.log_store import DeploymentLog
from typing import List
from fastapi import HTTPException
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)


def derive_status(deployment_id: int, exit_code) -> str:
    if exit_code is not None:
        return STATUS_SUCCEEDED if exit_code == 0 else STATUS_FAILED
    if worker_registry.get_phase(deployment_id) == worker_registry.PHASE_PENDING:
        return STATUS_PENDING
    return STATUS_RUNNING


class DeploymentService:
    def __init__(self, supabase: Client):
        self.supabase = supabase

    def _to_response(self, row: dict) -> DeploymentResponse:
        return DeploymentResponse(**row, status=derive_status(row["id"], row.get("exit_code")))

    def create_deployment(self, page_id: int) -> DeploymentResponse:
        """Insert a pending deployment and initialise its log file"""
        try:
            result = self.supabase.table("deployments").insert({
                "page_id": page_id,
            }).execute()

            if not result.data:
                raise HTTPException(status_code=500, detail="Failed to create deployment")

            deployment = self._to_response(result.data[0])
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error creating deployment: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

        DeploymentLog(deployment.id).initialize()
        return deployment

    def get_deployment_by_id(self, deployment_id: int) -> DeploymentResponse:
        """Get deployment by ID"""
        try:
            result = self.supabase.table("deployments")\
                .select("*")\
                .eq("id", deployment_id)\
                .maybe_single()\
                .execute()

            if not result or not result.data:
                raise HTTPException(status_code=404, detail="Deployment not found")

            return self._to_response(result.data)
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error getting deployment: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def list_deployments_by_page(self, page_id: int) -> List[DeploymentResponse]:
        """List all deployments for a page, newest first"""
        try:
            result = self.supabase.table("deployments")\
                .select("*")\
                .eq("page_id", page_id)\
                .order("created_at", desc=True)\
                .execute()

            return [self._to_response(row) for row in result.data]
        except Exception as e:
            logger.error(f"Error listing deployments: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def list_running_deployments(self) -> List[DeploymentResponse]:
        """Deployments that have not reported an exit code yet"""
        try:
            result = self.supabase.table("deployments")\
                .select("*")\
                .is_("exit_code", "null")\
                .execute()

            return [self._to_response(row) for row in result.data]
        except Exception as e:
            logger.error(f"Error listing running deployments: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def complete_deployment(self, deployment_id: int, exit_code: int) -> bool:
        """
        Record the terminal exit code. Only the first call for a deployment has
        an effect; returns False if it was already completed.
        """
        try:
            result = self.supabase.table("deployments")\
                .update({
                    "exit_code": exit_code,
                    "completed_at": datetime.now(timezone.utc).isoformat(),
                })\
                .eq("id", deployment_id)\
                .is_("exit_code", "null")\
                .execute()
        except Exception as e:
            logger.error(f"Error completing deployment {deployment_id}: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

        if not result.data:
            logger.warning(f"Deployment {deployment_id} was already completed or does not exist")
            return False
        logger.info(f"Deployment {deployment_id} completed with exit code {exit_code}")
        return True

    def reconcile_orphaned_deployments(self, exit_code: int = 1) -> List[int]:
        """
        Fail every deployment still marked running that has no live worker in this
        process. Workers are threads of the server, so after a restart any such row
        belongs to a worker that died without reporting.
        """
        reconciled = []
        for deployment in self.list_running_deployments():
            if worker_registry.is_active(deployment.id):
                continue
            if not self.complete_deployment(deployment.id, exit_code):
                continue
            reconciled.append(deployment.id)
            log = DeploymentLog(deployment.id)
            try:
                if log.exists() and not log.is_complete():
                    log.error("The build worker stopped without reporting a result.")
                    log.complete()
            except OSError as e:
                logger.warning(f"Could not close log of orphaned deployment {deployment.id}: {e}")
        if reconciled:
            logger.warning(f"Marked orphaned deployments as failed: {reconciled}")
        return reconciled

    def delete_deployments_by_page(self, page_id: int) -> None:
        try:
            self.supabase.table("deployments")\
                .delete()\
                .eq("page_id", page_id)\
                .execute()
        except Exception as e:
            logger.error(f"Error deleting deployments of page {page_id}: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))
