import hashlib
import hmac
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Tuple

from fastapi import HTTPException
from supabase import Client

from webpilotx.modules.deployments.dispatcher import trigger_deployment
from webpilotx.modules.pages.service import PageService
from webpilotx.modules.webhooks.schemas import PushEvent

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, payload: bytes) -> str:
    mac = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + mac


def verify_signature(secret: str, payload: bytes, signature: Optional[str]) -> bool:
    """
    Check a `sha256=<hex>` signature header against the raw request body.
    The digest must be computed over the bytes as received, never a re-serialised body.
    """
    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        return False
    # Header values may hold any latin-1 character; compare as bytes so they simply mismatch
    expected = compute_signature(secret, payload).encode("ascii")
    return hmac.compare_digest(expected, signature.encode("utf-8", "replace"))


class WebhookService:
    def __init__(self, supabase: Client):
        self.supabase = supabase
        self.page_service = PageService(supabase)

    def _trigger(self, page_id: int) -> Tuple[int, Optional[int]]:
        try:
            return page_id, trigger_deployment(page_id, self.supabase).id
        except Exception as e:
            logger.error(f"Error triggering deployment for page {page_id}: {e}")
            return page_id, None

    def dispatch_push(self, event: PushEvent) -> Tuple[List[int], List[int]]:
        """
        Start one deployment for every page built from the pushed repository and branch.
        Returns (deployment ids, ids of pages whose trigger failed). 404 if no page matches.
        """
        repo = event.repository.full_name
        branch = event.branch
        pages = self.page_service.list_pages_by_repo_branch(repo, branch)
        if not pages:
            logger.error(f"No pages found for {repo}@{branch}")
            raise HTTPException(status_code=404, detail="No pages found")

        logger.info(f"Push to {repo}@{branch} matches {len(pages)} page(s)")
        with ThreadPoolExecutor(max_workers=min(len(pages), 8), thread_name_prefix="webhook") as pool:
            results = list(pool.map(self._trigger, [page.id for page in pages]))

        deployment_ids = [deployment_id for _, deployment_id in results if deployment_id is not None]
        failed = [page_id for page_id, deployment_id in results if deployment_id is None]
        return deployment_ids, failed
