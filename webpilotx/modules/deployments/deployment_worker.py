import threading
import time
import logging
from typing import Optional

from webpilotx.config import settings
from webpilotx.modules.deployments import worker_registry
from webpilotx.modules.deployments.build_executor import BuildExecutor
from webpilotx.modules.deployments.commands import (
    EXIT_CANCELLED, EXIT_FAILURE, EXIT_TIMEOUT, remaining_time
)
from webpilotx.modules.deployments.env_file import build_environment, write_env_file
from webpilotx.modules.deployments.log_store import DeploymentLog, MARKER_ENV
from webpilotx.modules.deployments.repository_sync import RepositorySync
from webpilotx.modules.deployments.service import DeploymentService
from webpilotx.modules.deployments.service_provisioner import ServiceProvisioner
from webpilotx.modules.pages.service import PageService, working_tree_path

logger = logging.getLogger(__name__)

QUEUE_POLL_INTERVAL_SEC = 1.0


def start_deployment_worker(page_id: int, deployment_id: int) -> threading.Thread:
    """Start the build worker for a deployment in its own thread and return immediately."""
    thread = threading.Thread(
        target=deploy_page_async,
        kwargs={"page_id": page_id, "deployment_id": deployment_id},
        name=f"deploy-{deployment_id}",
        daemon=True,
    )
    worker_registry.register(deployment_id, page_id, thread)
    thread.start()
    logger.info(f"Started worker for deployment {deployment_id} of page {page_id}")
    return thread


def deploy_page_async(page_id: int, deployment_id: int) -> int:
    """
    Build worker: Sync -> Materialize -> Execute -> Provision.
    Runs in a separate thread. Whatever happens, the deployment ends up with an
    exit code and its log ends with the completion sentinel.
    """
    from webpilotx.database.supabase_client import SupabaseClient
    client = SupabaseClient.get_service_client()
    deployment_service = DeploymentService(client)
    log = DeploymentLog(deployment_id)

    exit_code = EXIT_FAILURE
    try:
        exit_code = _run_pipeline(page_id, deployment_id, PageService(client), log)
    except Exception as e:
        logger.exception(f"Deployment worker error for deployment {deployment_id}: {e}")
        try:
            log.error(str(e))
        except OSError as log_error:
            logger.error(f"Could not write error to log of deployment {deployment_id}: {log_error}")
        exit_code = EXIT_FAILURE
    finally:
        try:
            deployment_service.complete_deployment(deployment_id, exit_code)
        except Exception as e:
            logger.error(f"Failed to update deployment {deployment_id}: {e}")
            log.error(f"Failed to record the deployment result: {e}")
        worker_registry.unregister(deployment_id)
        log.complete()

    if exit_code == 0:
        logger.info(f"Deployment {deployment_id} for page {page_id} completed successfully")
    else:
        logger.error(f"Deployment {deployment_id} for page {page_id} failed with exit code {exit_code}")
    return exit_code


def _wait_for_page(page_id: int, deployment_id: int, deadline: Optional[float], log: DeploymentLog) -> int:
    """Wait for this deployment's turn on the page. Returns 0 once it holds the page, or the exit code to finish with."""
    if worker_registry.acquire_page(page_id, deployment_id, timeout=0):
        return 0
    log.line("Waiting for an earlier deployment of this page to finish...")
    while True:
        if worker_registry.is_cancel_requested(deployment_id):
            worker_registry.release_page(page_id, deployment_id)
            return EXIT_CANCELLED
        left = remaining_time(deadline)
        if left is not None and left <= 0:
            worker_registry.release_page(page_id, deployment_id)
            log.line("Deadline exceeded while waiting for the earlier deployment.")
            return EXIT_TIMEOUT
        wait = QUEUE_POLL_INTERVAL_SEC if left is None else min(QUEUE_POLL_INTERVAL_SEC, left)
        if worker_registry.acquire_page(page_id, deployment_id, timeout=wait):
            return 0


def _run_pipeline(page_id: int, deployment_id: int, page_service: PageService, log: DeploymentLog) -> int:
    deadline = None
    if settings.deploy_timeout_seconds > 0:
        deadline = time.monotonic() + settings.deploy_timeout_seconds

    code = _wait_for_page(page_id, deployment_id, deadline, log)
    if code != 0:
        return code
    try:
        if worker_registry.is_cancel_requested(deployment_id):
            return EXIT_CANCELLED
        # Looked up only while holding the page: a delete queued ahead of us has finished by now
        page = page_service.get_page_by_id(page_id)
        env_vars = page_service.list_env_vars(page_id)
        token = page_service.get_account_token(page.account_login)
        work_dir = working_tree_path(page_id)

        worker_registry.mark_running(deployment_id)
        log.line(f"Deploying {page.repo}@{page.branch} for page {page.name}")

        code = RepositorySync(token).sync(
            page.repo, page.branch, work_dir, log,
            deployment_id=deployment_id, deadline=deadline,
        )
        if worker_registry.is_cancel_requested(deployment_id):
            return EXIT_CANCELLED
        if code != 0:
            return code

        log.marker(MARKER_ENV)
        env_path = write_env_file(work_dir, env_vars)
        log.line(f"Wrote {len(env_vars)} variable(s) to {env_path.name}")

        code = BuildExecutor().run(
            page.build_script, work_dir, log,
            env=build_environment(env_vars),
            deployment_id=deployment_id,
            deadline=deadline,
        )
        if code != 0:
            return code
        if worker_registry.is_cancel_requested(deployment_id):
            return EXIT_CANCELLED

        provisioned = ServiceProvisioner().provision(
            page.name, work_dir, page.build_output_dir, env_vars, log
        )
        if not provisioned and settings.strict_provisioning:
            log.line("Service activation failed; marking the deployment as failed.")
            return EXIT_FAILURE
        return 0
    finally:
        worker_registry.release_page(page_id, deployment_id)
