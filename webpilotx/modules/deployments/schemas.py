from pydantic import BaseModel
from typing import Optional
from datetime import datetime

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"


class DeploymentResponse(BaseModel):
    id: int
    page_id: int
    created_at: datetime
    completed_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    status: str = STATUS_PENDING

    class Config:
        from_attributes = True


class DeploymentTriggerResponse(BaseModel):
    message: str
    deployment_id: int
