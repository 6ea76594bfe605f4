"""
Workflow definitions and the store that reads them.

The workflow document (``comfyui-workflows.json``) lists every generation
workflow: the node-graph template it is based on, how request fields are
written into that template, and the tasks that run before and after the
engine executes it. The store re-reads the document on every call so edits
take effect without a restart.
"""

import json
import logging
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaError

from imagen import config
from imagen.core.errors import ConfigError
from imagen.core.models import TaskKind, WorkflowType

logger = logging.getLogger(__name__)


class _Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class MathStep(_Document):
    offset: float = 0
    scale: float = 1
    bias: float = 0
    round: Literal["none", "floor", "ceil"] = "none"


class TaskSpec(_Document):
    name: str | None = None
    condition: dict[str, Any] | None = None

    process: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)

    prompt: str | None = None
    template: str | None = None
    model: str | None = None
    image_path: str | None = Field(default=None, alias="imagePath")

    from_: str | None = Field(default=None, alias="from")
    to: str | None = None
    math: list[MathStep] | None = None

    @property
    def kind(self) -> TaskKind:
        if self.process is not None:
            return TaskKind.PROCESS
        if self.prompt is not None or self.template is not None:
            return TaskKind.PROMPT
        if self.math is not None:
            return TaskKind.MATH
        return TaskKind.COPY

    @property
    def countable(self) -> bool:
        return self.kind in (TaskKind.PROCESS, TaskKind.PROMPT)

    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.kind == TaskKind.PROCESS:
            return f"Processing {self.process}"
        if self.to == "description":
            return "Analyzing Image"
        return f"Generating {self.to}"


class FieldBinding(_Document):
    source: str | None = Field(default=None, alias="from")
    target_path: list[str] = Field(alias="to")
    literal_value: Any = Field(default=None, alias="value")
    prefix: str | None = None
    postfix: str | None = None
    condition: dict[str, Any] | None = None

    @property
    def has_literal(self) -> bool:
        return "literal_value" in self.model_fields_set


class UploadSpec(_Document):
    source: str = Field(alias="from")


class WorkflowOptions(_Document):
    type: WorkflowType = WorkflowType.IMAGE
    input_images: int = Field(default=0, alias="inputImages")
    input_audios: int = Field(default=0, alias="inputAudios")
    extra_inputs: list[dict[str, Any]] = Field(default_factory=list, alias="extraInputs")


class WorkflowDefinition(_Document):
    name: str
    base_path: str = Field(alias="base")
    options: WorkflowOptions = Field(default_factory=WorkflowOptions)
    field_bindings: list[FieldBinding] = Field(default_factory=list, alias="replace")
    upload: list[UploadSpec] = Field(default_factory=list)
    pre_tasks: list[TaskSpec] = Field(default_factory=list, alias="preGenerationTasks")
    post_tasks: list[TaskSpec] = Field(default_factory=list, alias="postGenerationTasks")

    @property
    def output_type(self) -> str:
        """Inpaint workflows produce plain images."""
        if self.options.type == WorkflowType.INPAINT:
            return WorkflowType.IMAGE.value
        return self.options.type.value

    def option_defaults(self) -> dict[str, Any]:
        """Free-form option keys (e.g. ``imageFormat``) seeded into generation data."""
        return dict(self.options.model_extra or {})


class WorkflowCatalog(_Document):
    workflows: list[WorkflowDefinition] = Field(default_factory=list)
    default_tasks: list[TaskSpec] = Field(
        default_factory=list, alias="defaultImageGenerationTasks"
    )

    def find(self, name: str) -> WorkflowDefinition | None:
        return next((w for w in self.workflows if w.name == name), None)


class WorkflowStore:
    def __init__(self, path: str | Path | None = None, templates_dir: str | Path | None = None):
        self.path = Path(path or config.WORKFLOWS_PATH)
        self.templates_dir = Path(templates_dir or config.TEMPLATES_DIR)

    def load(self) -> WorkflowCatalog:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ConfigError(f"Workflow document not found: {self.path}")
        try:
            catalog = WorkflowCatalog.model_validate(json.loads(raw))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Workflow document is not valid JSON: {e}")
        except SchemaError as e:
            raise ConfigError("Workflow document is malformed", details=str(e))

        names = [w.name for w in catalog.workflows]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigError(f"Duplicate workflow names: {', '.join(duplicates)}")

        logger.debug("Loaded %d workflows from %s", len(catalog.workflows), self.path)
        return catalog

    def get(self, name: str) -> WorkflowDefinition:
        workflow = self.load().find(name)
        if workflow is None:
            raise ConfigError(f"Workflow '{name}' not found")
        return workflow

    def load_template(self, base_path: str) -> dict[str, Any]:
        template_path = self.templates_dir / base_path
        try:
            graph = json.loads(template_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise ConfigError(f"Workflow template not found: {template_path}")
        except json.JSONDecodeError as e:
            raise ConfigError(f"Workflow template {template_path} is not valid JSON: {e}")
        if not isinstance(graph, dict):
            raise ConfigError(f"Workflow template {template_path} must be a JSON object")
        return graph
