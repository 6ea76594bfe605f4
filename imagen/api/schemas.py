from typing import Any

from pydantic import BaseModel, ConfigDict


# --- Request models ---

class SyncGenerateRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    workflow: str | None = None


class RegenerateRequest(BaseModel):
    uid: int | None = None
    fields: list[str] | None = None


class FolderRequest(BaseModel):
    uid: str | None = None
    label: str | None = None


# --- Response models ---

class GenerateResponse(BaseModel):
    success: bool = True
    taskId: str
    message: str


class RegenerateResponse(BaseModel):
    success: bool = True
    taskId: str


class WorkflowSummary(BaseModel):
    name: str
    type: str
    options: dict[str, Any]

