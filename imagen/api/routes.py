import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse
from starlette.datastructures import UploadFile

from imagen import config
from imagen.api.schemas import (
    FolderRequest,
    GenerateResponse,
    RegenerateRequest,
    RegenerateResponse,
    SyncGenerateRequest,
    WorkflowSummary,
)
from imagen.core.errors import ConfigError, ImagenError, ValidationError
from imagen.core.orchestrator import GenerationOrchestrator
from imagen.core.progress import ProgressChannel
from imagen.core.workflows import WorkflowStore
from imagen.db import repository
from imagen.db.database import get_db
from imagen.services import get_channel, get_orchestrator, get_store

logger = logging.getLogger(__name__)

router = APIRouter()


def _http_error(status_code: int, e: ImagenError) -> HTTPException:
    return HTTPException(
        status_code=status_code, detail={"error": e.message, "details": e.details}
    )


async def _read_form(request: Request):
    """Split a multipart form into plain fields and ``(content, filename)`` uploads."""
    form = await request.form()
    request_data = {}
    files = {}
    for key, value in form.multi_items():
        if isinstance(value, UploadFile):
            files[key] = (await value.read(), value.filename or "")
        else:
            request_data[key] = value
    return request_data, files


# ── Generation ──────────────────────────────────────────────────────────────


@router.post("/generate", response_model=GenerateResponse)
async def generate(
    request: Request,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    request_data, files = await _read_form(request)

    try:
        task_id = await orchestrator.start_generation(request_data, files)
    except (ValidationError, ConfigError) as e:
        raise _http_error(400, e)
    except ImagenError as e:
        logger.error("Failed to start generation: %s", e.message)
        raise _http_error(500, e)

    return GenerateResponse(taskId=task_id, message="Generation task created")


@router.post("/generate/inpaint", response_model=GenerateResponse)
async def generate_inpaint(
    request: Request,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    request_data, files = await _read_form(request)

    try:
        task_id = await orchestrator.start_inpaint(
            request_data, files.get("image"), files.get("mask")
        )
    except (ValidationError, ConfigError) as e:
        raise _http_error(400, e)
    except ImagenError as e:
        logger.error("Failed to start inpaint generation: %s", e.message)
        raise _http_error(500, e)

    return GenerateResponse(taskId=task_id, message="Generation task created")


@router.post("/generate/sync")
async def generate_sync(
    payload: SyncGenerateRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.generate_sync(payload.model_dump())
    except (ValidationError, ConfigError) as e:
        raise _http_error(400, e)
    except ImagenError as e:
        raise _http_error(500, e)


@router.post("/regenerate", response_model=RegenerateResponse)
async def regenerate(
    payload: RegenerateRequest,
    db: Session = Depends(get_db),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    if payload.uid is None:
        raise HTTPException(status_code=400, detail="Missing uid")
    if not payload.fields:
        raise HTTPException(status_code=400, detail="Missing or invalid fields array")

    entry = repository.find_by_uid(db, payload.uid)
    if not entry:
        raise HTTPException(
            status_code=404, detail=f"Media entry with uid {payload.uid} not found"
        )

    task_id = orchestrator.start_regeneration(entry, payload.fields)
    return RegenerateResponse(taskId=task_id)


@router.get("/progress/{task_id}")
async def progress(task_id: str, channel: ProgressChannel = Depends(get_channel)):
    subscription = channel.subscribe(task_id)
    if subscription is None:
        raise HTTPException(status_code=404, detail=f"Task '{task_id}' not found")

    async def event_generator():
        try:
            async for event in subscription:
                yield {"data": json.dumps(event)}
        finally:
            channel.unsubscribe(subscription)

    return EventSourceResponse(event_generator(), ping=config.SSE_PING_INTERVAL)


# ── Workflows ───────────────────────────────────────────────────────────────


@router.get("/workflows", response_model=list[WorkflowSummary])
def list_workflows(store: WorkflowStore = Depends(get_store)):
    try:
        document = store.load()
    except ConfigError as e:
        raise _http_error(500, e)
    return [
        WorkflowSummary(
            name=w.name,
            type=w.options.type.value,
            options=w.options.model_dump(by_alias=True, mode="json"),
        )
        for w in document.workflows
    ]


# ── Catalog ─────────────────────────────────────────────────────────────────


@router.get("/catalog")
def list_catalog(
    query: str = "",
    tags: str = "",
    folder: str | None = None,
    sort: str = "descending",
    limit: int = 10,
    db: Session = Depends(get_db),
):
    wanted = [t.strip() for t in tags.split(",") if t.strip()]
    return repository.list_filtered(
        db, query=query, tags=wanted, folder=folder, sort=sort, limit=limit
    )


@router.get("/catalog/{uid}")
def get_catalog_entry(uid: int, db: Session = Depends(get_db)):
    entry = repository.find_by_uid(db, uid)
    if not entry:
        raise HTTPException(status_code=404, detail=f"Media entry with uid {uid} not found")
    return entry


@router.delete("/catalog/{uid}")
def delete_catalog_entry(uid: int, db: Session = Depends(get_db)):
    if not repository.delete_entries(db, [uid]):
        raise HTTPException(status_code=404, detail=f"Media entry with uid {uid} not found")
    return {"success": True}


@router.get("/folders")
def list_folders(db: Session = Depends(get_db)):
    return repository.list_folders(db)


@router.post("/folders")
def select_folder(payload: FolderRequest, db: Session = Depends(get_db)):
    try:
        listing = repository.create_or_select_folder(db, payload.uid, payload.label)
    except ValidationError as e:
        raise _http_error(400, e)
    if listing is None:
        raise HTTPException(status_code=404, detail=f"Folder '{payload.uid}' not found")
    return listing
