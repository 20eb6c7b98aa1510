from pydantic import BaseModel
from typing import List, Optional


class WebhookRepository(BaseModel):
    full_name: str


class PushEvent(BaseModel):
    ref: str
    repository: WebhookRepository

    @property
    def branch(self) -> str:
        """Last path segment of the ref, e.g. refs/heads/main -> main"""
        return self.ref.split("/")[-1]


class WebhookResponse(BaseModel):
    message: str
    deployment_ids: List[int] = []
    failed_page_ids: Optional[List[int]] = None
