import shutil
from datetime import datetime, timezone
from pathlib import Path
from supabase import Client
from webpilotx.config import settings
from webpilotx.modules.deployments import process_registry, worker_registry
from webpilotx.modules.deployments.service import DeploymentService
from webpilotx.modules.deployments.service_provisioner import ServiceProvisioner
from webpilotx.modules.pages.schemas import EnvVar, PageCreate, PageResponse, PageUpdate
from typing import List, Optional
from fastapi import HTTPException
import logging

logger = logging.getLogger(__name__)

# Seconds to wait for an in-flight deployment to let go of the page on delete
DELETE_WAIT_TIMEOUT_SEC = 30


def working_tree_path(page_id: int) -> Path:
    return settings.working_trees_dir / str(page_id)


class PageService:
    def __init__(self, supabase: Client):
        self.supabase = supabase

    def get_page_by_id(self, page_id: int) -> PageResponse:
        """Get page by ID"""
        try:
            result = self.supabase.table("pages")\
                .select("*")\
                .eq("id", page_id)\
                .maybe_single()\
                .execute()

            if not result or not result.data:
                raise HTTPException(status_code=404, detail="Page not found")

            return PageResponse(**result.data)
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error getting page: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def list_pages_by_repo_branch(self, repo: str, branch: str) -> List[PageResponse]:
        """Pages building from this repository and branch (several pages may share one)"""
        try:
            result = self.supabase.table("pages")\
                .select("*")\
                .eq("repo", repo)\
                .eq("branch", branch)\
                .execute()

            return [PageResponse(**page) for page in result.data]
        except Exception as e:
            logger.error(f"Error listing pages for {repo}@{branch}: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def list_env_vars(self, page_id: int) -> List[EnvVar]:
        try:
            result = self.supabase.table("env_vars")\
                .select("name, value")\
                .eq("page_id", page_id)\
                .order("id")\
                .execute()

            return [EnvVar(name=row["name"], value=row["value"]) for row in result.data]
        except Exception as e:
            logger.error(f"Error fetching environment variables: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def get_account_token(self, account_login: Optional[str]) -> Optional[str]:
        """Access token of the page's source-control account, if one is linked"""
        if not account_login:
            return None
        try:
            result = self.supabase.table("accounts")\
                .select("access_token")\
                .eq("login", account_login)\
                .maybe_single()\
                .execute()
        except Exception as e:
            logger.error(f"Error fetching account {account_login}: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))
        if not result or not result.data:
            return None
        return result.data.get("access_token")

    def _ensure_name_available(self, name: str) -> None:
        # The name picks the systemd unit, so two pages must never share one
        try:
            result = self.supabase.table("pages")\
                .select("id")\
                .eq("name", name)\
                .execute()
        except Exception as e:
            logger.error(f"Error checking page name {name}: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))
        if result.data:
            raise HTTPException(status_code=409, detail=f"A page named {name} already exists")

    def create_page(self, page_data: PageCreate) -> PageResponse:
        """Create a page together with its env vars"""
        self._ensure_name_available(page_data.name)
        try:
            result = self.supabase.table("pages").insert({
                "account_login": page_data.account_login,
                "repo": page_data.repo,
                "name": page_data.name,
                "branch": page_data.branch,
                "build_script": page_data.build_script or None,
                "build_output_dir": page_data.build_output_dir or None,
            }).execute()

            if not result.data:
                raise HTTPException(status_code=500, detail="Failed to create page")

            page = PageResponse(**result.data[0])
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error creating page: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

        self.replace_env_vars(page.id, page_data.env_vars)
        logger.info(f"Created page {page.id} ({page.name}) for {page.repo}@{page.branch}")
        return page

    def update_page(self, page_id: int, page_data: PageUpdate) -> PageResponse:
        """Save a page's settings and replace its env vars. The page name is fixed."""
        self.get_page_by_id(page_id)
        try:
            result = self.supabase.table("pages")\
                .update({
                    "repo": page_data.repo,
                    "branch": page_data.branch,
                    "build_script": page_data.build_script or None,
                    "build_output_dir": page_data.build_output_dir or None,
                    "updated_at": datetime.now(timezone.utc).isoformat(),
                })\
                .eq("id", page_id)\
                .execute()

            if not result.data:
                raise HTTPException(status_code=404, detail="Page not found")

            page = PageResponse(**result.data[0])
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error updating page {page_id}: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

        self.replace_env_vars(page_id, page_data.env_vars)
        return page

    def replace_env_vars(self, page_id: int, env_vars: List[EnvVar]) -> None:
        """Replace the stored env vars of a page, keeping the given order"""
        try:
            self.supabase.table("env_vars").delete().eq("page_id", page_id).execute()
            if env_vars:
                self.supabase.table("env_vars").insert([
                    {"page_id": page_id, "name": env.name, "value": env.value}
                    for env in env_vars
                ]).execute()
        except Exception as e:
            logger.error(f"Error saving env vars of page {page_id}: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def delete_page(self, page_id: int) -> PageResponse:
        """
        Delete a page with its env vars, deployments, working tree and service unit.
        In-flight deployments of the page are cancelled first. Deployment logs stay on disk.
        """
        page = self.get_page_by_id(page_id)

        for deployment_id in worker_registry.active_deployments(page_id):
            worker_registry.request_cancel(deployment_id)
            process_registry.terminate(deployment_id)

        # Deployments queued after this ticket look the page up once it is gone
        ticket = object()
        if not worker_registry.acquire_page(page_id, ticket, timeout=DELETE_WAIT_TIMEOUT_SEC):
            logger.warning(f"Deleting page {page_id} while a deployment still holds it")
        try:
            try:
                self.supabase.table("env_vars").delete().eq("page_id", page_id).execute()
            except Exception as e:
                logger.error(f"Error deleting env vars of page {page_id}: {str(e)}")
                raise HTTPException(status_code=500, detail=str(e))
            DeploymentService(self.supabase).delete_deployments_by_page(page_id)
            try:
                result = self.supabase.table("pages").delete().eq("id", page_id).execute()
            except Exception as e:
                logger.error(f"Error deleting page {page_id}: {str(e)}")
                raise HTTPException(status_code=500, detail=str(e))
            if not result.data:
                raise HTTPException(status_code=404, detail="Page not found")

            work_dir = working_tree_path(page_id)
            try:
                shutil.rmtree(work_dir)
                logger.info(f"Deleted folder: {work_dir}")
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.error(f"Failed to delete folder {work_dir}: {e}")

            ServiceProvisioner().remove(page.name)
        finally:
            worker_registry.release_page(page_id, ticket)
        return page
