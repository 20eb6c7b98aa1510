from fastapi import APIRouter, Depends, HTTPException
from webpilotx.database.supabase_client import get_supabase
from webpilotx.modules.pages.schemas import EnvVar, PageCreate, PageDeployResponse, PageResponse, PageUpdate
from webpilotx.modules.pages.service import PageService
from webpilotx.modules.deployments.schemas import DeploymentResponse, DeploymentTriggerResponse
from webpilotx.modules.deployments.service import DeploymentService
from webpilotx.modules.deployments.dispatcher import trigger_deployment
from supabase import Client
from typing import List

router = APIRouter(prefix="/pages", tags=["pages"])


def get_page_service(supabase: Client = Depends(get_supabase)) -> PageService:
    return PageService(supabase)


def get_deployment_service(supabase: Client = Depends(get_supabase)) -> DeploymentService:
    return DeploymentService(supabase)


@router.post("", response_model=PageDeployResponse, status_code=201)
async def create_page(
    page_data: PageCreate,
    supabase: Client = Depends(get_supabase)
):
    """Create a page with its env vars and start its first deployment"""
    page = PageService(supabase).create_page(page_data)
    deployment = trigger_deployment(page.id, supabase)
    return PageDeployResponse(
        message="Page created and deployment triggered successfully",
        page_id=page.id,
        deployment_id=deployment.id,
    )


@router.get("/{page_id}", response_model=PageResponse)
async def get_page(
    page_id: int,
    service: PageService = Depends(get_page_service)
):
    return service.get_page_by_id(page_id)


@router.put("/{page_id}", response_model=PageDeployResponse)
async def save_and_deploy_page(
    page_id: int,
    page_data: PageUpdate,
    supabase: Client = Depends(get_supabase)
):
    """Save the page's settings, replace its env vars and redeploy it"""
    page = PageService(supabase).update_page(page_id, page_data)
    deployment = trigger_deployment(page.id, supabase)
    return PageDeployResponse(
        message="Page saved and deployment triggered successfully",
        page_id=page.id,
        deployment_id=deployment.id,
    )


@router.get("/{page_id}/env-vars", response_model=List[EnvVar])
async def list_page_env_vars(
    page_id: int,
    service: PageService = Depends(get_page_service)
):
    service.get_page_by_id(page_id)
    return service.list_env_vars(page_id)


@router.post("/{page_id}/deploy", response_model=DeploymentTriggerResponse, status_code=201)
async def deploy_page(
    page_id: int,
    supabase: Client = Depends(get_supabase)
):
    """Trigger a deployment of the page. Returns as soon as the worker has started."""
    deployment = trigger_deployment(page_id, supabase)
    return DeploymentTriggerResponse(
        message="Deployment triggered successfully",
        deployment_id=deployment.id,
    )


@router.get("/{page_id}/deployments", response_model=List[DeploymentResponse])
async def list_page_deployments(
    page_id: int,
    page_service: PageService = Depends(get_page_service),
    deployment_service: DeploymentService = Depends(get_deployment_service)
):
    """List deployments of a page, newest first"""
    page_service.get_page_by_id(page_id)
    return deployment_service.list_deployments_by_page(page_id)


@router.get("/{page_id}/deployments/{deployment_id}", response_model=DeploymentResponse)
async def get_page_deployment(
    page_id: int,
    deployment_id: int,
    deployment_service: DeploymentService = Depends(get_deployment_service)
):
    deployment = deployment_service.get_deployment_by_id(deployment_id)
    if deployment.page_id != page_id:
        raise HTTPException(status_code=404, detail="Deployment not found")
    return deployment


@router.delete("/{page_id}", status_code=204)
def delete_page(
    page_id: int,
    service: PageService = Depends(get_page_service)
):
    """Delete a page together with its deployments, working tree and systemd service"""
    service.delete_page(page_id)
    return None
