import json
import os
import tempfile
from pathlib import Path

# Keep the app's own database, storage and logs out of the working tree
_RUNTIME_DIR = tempfile.mkdtemp(prefix="imagen-tests-")
os.environ.setdefault("IMAGEN_DB_PATH", os.path.join(_RUNTIME_DIR, "imagen.db"))
os.environ.setdefault("IMAGEN_STORAGE_DIR", os.path.join(_RUNTIME_DIR, "storage"))
os.environ.setdefault("IMAGEN_LOGS_DIR", os.path.join(_RUNTIME_DIR, "logs"))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from imagen import services  # noqa: E402
from imagen.core.errors import PromptTaskError  # noqa: E402
from imagen.core.orchestrator import GenerationOrchestrator  # noqa: E402
from imagen.core.progress import ProgressChannel  # noqa: E402
from imagen.core.session import EngineSessionState  # noqa: E402
from imagen.core.workflows import WorkflowStore  # noqa: E402
from imagen.db import tables  # noqa: E402, F401
from imagen.db.catalog import MediaCatalog  # noqa: E402
from imagen.db.database import Base, get_db  # noqa: E402
from imagen.engine.client import CompletionStatus, UploadResult  # noqa: E402
from imagen.llm.client import fill_placeholders  # noqa: E402
from imagen.main import app  # noqa: E402

BASIC_TEMPLATE = {
    "3": {"class_type": "KSampler", "inputs": {"seed": 0}, "_meta": {"title": "KSampler"}},
    "6": {
        "class_type": "CLIPTextEncode",
        "inputs": {"text": ""},
        "_meta": {"title": "CLIP Text Encode (Prompt)"},
    },
    "9": {"class_type": "SaveImage", "inputs": {"output_path": ""}, "_meta": {"title": "Save Image"}},
}

BASIC_BINDINGS = [
    {"from": "prompt", "to": ["6", "inputs", "text"]},
    {"from": "seed", "to": ["3", "inputs", "seed"]},
    {"from": "saveImagePath", "to": ["9", "inputs", "output_path"]},
]

WORKFLOW_DOCUMENT = {
    "workflows": [
        {
            "name": "Text to Image",
            "base": "basic.json",
            "options": {"type": "image", "imageFormat": "png"},
            "replace": BASIC_BINDINGS,
            "postGenerationTasks": [
                {
                    "to": "description",
                    "prompt": "Describe this image",
                    "model": "llava",
                    "imagePath": "saveImagePath",
                },
                {"to": "summary", "template": "{{prompt}} ({{description}})"},
            ],
        },
        {
            "name": "Enhanced Prompt",
            "base": "basic.json",
            "options": {"type": "image", "imageFormat": "png"},
            "replace": BASIC_BINDINGS,
            "preGenerationTasks": [
                {
                    "name": "Enhancing prompt",
                    "to": "prompt",
                    "template": "{{prompt}}, highly detailed",
                    "condition": {"where": {"data": "enhance"}, "equals": {"value": True}},
                },
                {"from": "width", "to": "latentWidth", "math": [{"scale": 0.125, "round": "floor"}]},
            ],
        },
        {
            "name": "Prompt Writer",
            "base": "basic.json",
            "options": {"type": "image", "imageFormat": "png"},
            "replace": BASIC_BINDINGS,
            "preGenerationTasks": [
                {"to": "prompt", "prompt": "Write a prompt about {{prompt}}", "model": "mistral"}
            ],
        },
        {
            "name": "Edit Image",
            "base": "basic.json",
            "options": {"type": "inpaint", "inputImages": 1, "imageFormat": "png"},
            "upload": [{"from": "image_0"}],
            "replace": [
                *BASIC_BINDINGS,
                {"from": "image_0_filename", "to": ["10", "inputs", "image"]},
            ],
        },
        {
            "name": "No Format",
            "base": "basic.json",
            "options": {"type": "image"},
            "replace": BASIC_BINDINGS,
        },
        {
            "name": "Upscale",
            "base": "basic.json",
            "options": {"type": "image", "imageFormat": "png"},
            "replace": BASIC_BINDINGS,
        },
        {
            "name": "Generate And Upscale",
            "base": "basic.json",
            "options": {"type": "image", "imageFormat": "png"},
            "replace": BASIC_BINDINGS,
            "postGenerationTasks": [
                {
                    "process": "executeWorkflow",
                    "parameters": {
                        "workflow": "Upscale",
                        "inputMapping": [
                            {"from": "prompt", "to": "prompt"},
                            {"image": "generated", "toMediaInput": 0},
                        ],
                        "outputMapping": [{"from": "seed", "to": "upscaleSeed"}],
                    },
                }
            ],
        },
        {
            "name": "Extract Lyrics",
            "base": "basic.json",
            "options": {"type": "image", "imageFormat": "png"},
            "replace": BASIC_BINDINGS,
            "postGenerationTasks": [
                {"process": "extractOutputTexts", "parameters": {"properties": ["lyrics"]}}
            ],
        },
        {
            "name": "Bad Tag Condition",
            "base": "basic.json",
            "options": {"type": "image", "imageFormat": "png"},
            "replace": BASIC_BINDINGS,
            "postGenerationTasks": [
                {"to": "tags", "prompt": "List tags for {{prompt}}", "condition": {"bogus": 1}}
            ],
        },
        {
            "name": "Bad Binding Condition",
            "base": "basic.json",
            "options": {"type": "image", "imageFormat": "png"},
            "replace": [
                *BASIC_BINDINGS,
                {"from": "lora", "to": ["4", "inputs", "name"], "condition": {"where": "x"}},
            ],
            "preGenerationTasks": [
                {"to": "prompt", "prompt": "Write a prompt about {{prompt}}", "model": "mistral"}
            ],
        },
        {
            "name": "Too Deep",
            "base": "basic.json",
            "options": {"type": "image", "imageFormat": "png"},
            "postGenerationTasks": [
                {"process": "executeWorkflow", "parameters": {"workflow": "Generate And Upscale"}}
            ],
        },
    ],
    "defaultImageGenerationTasks": [
        {
            "to": "description",
            "prompt": "Describe this image",
            "model": "llava",
            "imagePath": "saveImagePath",
        },
        {"to": "summary", "template": "Summary of {{description}}"},
    ],
}


class FakeEngine:
    """Stands in for the engine: writes the output file the graph names on submit."""

    def __init__(self):
        self.submitted = []
        self.uploads = []
        self.freed = 0
        self.write_output = True
        self.errored = False
        self.errored_jobs = set()
        self.on_submit = None

    async def upload_media(self, data, filename, kind="image", storage_scope="input", overwrite=False):
        self.uploads.append({"filename": filename, "kind": kind, "overwrite": overwrite})
        return UploadResult(filename=filename, kind=kind)

    async def submit(self, graph, client_id=None):
        self.submitted.append(graph)
        if self.on_submit:
            self.on_submit(graph)
        output_path = graph.get("9", {}).get("inputs", {}).get("output_path")
        if output_path and self.write_output:
            Path(output_path).write_bytes(b"fake image")
        return f"job-{len(self.submitted)}"

    async def await_completion(self, job_id, max_attempts=None, interval=None):
        if self.errored or job_id in self.errored_jobs:
            return CompletionStatus(
                completed=False, errored=True, data={"status": {"status_str": "error"}}
            )
        return CompletionStatus(completed=True, data={"status": {"completed": True}})

    async def free_memory(self):
        self.freed += 1


class FakeLLM:
    def __init__(self):
        self.calls = []
        self.fail_fields = set()
        self.resets = 0

    def reset_prompt_log(self):
        self.resets += 1

    async def apply_prompt_task(self, task, data):
        self.calls.append(task.to)
        if task.to in self.fail_fields:
            raise PromptTaskError("model offline")
        text = fill_placeholders(task.prompt or task.template, data, task.to)
        data[task.to] = text if task.prompt is None else f"generated {task.to}"


@pytest.fixture()
def session_factory(tmp_path):
    db_path = tmp_path / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def catalog(session_factory):
    return MediaCatalog(session_factory)


@pytest.fixture()
def workflow_store(tmp_path):
    templates = tmp_path / "workflows"
    templates.mkdir()
    (templates / "basic.json").write_text(json.dumps(BASIC_TEMPLATE))
    document = tmp_path / "comfyui-workflows.json"
    document.write_text(json.dumps(WORKFLOW_DOCUMENT))
    return WorkflowStore(document, templates)


@pytest.fixture()
def orchestrator(tmp_path, workflow_store, catalog):
    return GenerationOrchestrator(
        channel=ProgressChannel(cleanup_delay=60),
        engine=FakeEngine(),
        llm=FakeLLM(),
        store=workflow_store,
        catalog=catalog,
        session=EngineSessionState(),
        storage_dir=tmp_path / "storage",
        logs_dir=tmp_path / "logs",
        poll_attempts=1,
        poll_interval=0,
    )


@pytest.fixture()
def client(session_factory, orchestrator, workflow_store):
    """Provide a TestClient with a fresh temporary database and fake backends per test."""

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[services.get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[services.get_channel] = lambda: orchestrator.channel
    app.dependency_overrides[services.get_store] = lambda: workflow_store
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
