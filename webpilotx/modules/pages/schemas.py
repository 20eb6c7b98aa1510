from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime


class EnvVar(BaseModel):
    name: str = Field(min_length=1)
    value: str


class PageCreate(BaseModel):
    account_login: str = Field(min_length=1)
    repo: str = Field(min_length=1)
    name: str = Field(min_length=1)
    branch: str = Field(min_length=1)
    build_script: Optional[str] = None
    build_output_dir: Optional[str] = None
    env_vars: List[EnvVar] = []


class PageUpdate(BaseModel):
    """Full replacement of a page's settings; the env vars replace the stored set."""
    repo: str = Field(min_length=1)
    branch: str = Field(min_length=1)
    build_script: Optional[str] = None
    build_output_dir: Optional[str] = None
    env_vars: List[EnvVar] = []


class PageResponse(BaseModel):
    id: int
    account_login: Optional[str] = None
    repo: str
    name: str
    branch: str
    build_script: Optional[str] = None
    build_output_dir: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PageDeployResponse(BaseModel):
    message: str
    page_id: int
    deployment_id: int
