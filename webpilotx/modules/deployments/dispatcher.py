import logging
from supabase import Client

from webpilotx.modules.deployments.deployment_worker import start_deployment_worker
from webpilotx.modules.deployments.schemas import DeploymentResponse
from webpilotx.modules.deployments.service import DeploymentService
from webpilotx.modules.pages.service import PageService

logger = logging.getLogger(__name__)


def trigger_deployment(page_id: int, supabase: Client) -> DeploymentResponse:
    """
    Create a deployment for a page and start its worker.
    Raises 404 for an unknown page before anything is created. Does not wait for the build.
    """
    page = PageService(supabase).get_page_by_id(page_id)
    deployment = DeploymentService(supabase).create_deployment(page.id)
    start_deployment_worker(page.id, deployment.id)
    logger.info(f"Deployment {deployment.id} triggered for page {page.id}")
    return deployment
