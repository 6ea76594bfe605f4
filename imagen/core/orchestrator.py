"""
Generation orchestrator: runs one generation request end to end.

A run moves through fixed phases, strictly in order:

    CREATED -> PRE_TASKS -> ENGINE_SUBMISSION -> ENGINE_EXECUTING
            -> POST_TASKS -> FINALIZING -> COMPLETED

and any phase may end in FAILED. The step plan (countable pre-tasks,
important graph nodes, countable post-tasks) is fixed before the first task
runs, so the progress bar never has to shrink. Pre-task failures are fatal;
post-task prompt failures only produce a warning and a placeholder value.
"""

import asyncio
import json
import logging
import math
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from imagen import config
from imagen.core.conditions import check_condition, is_blank, parse_condition
from imagen.core.errors import (
    ConfigError,
    EngineExecutionError,
    ImagenError,
    NestedWorkflowError,
    OutputMissingError,
    PostGenerationProcessError,
    PostGenerationPromptError,
    PreGenerationTaskError,
    ProcessTaskError,
    PromptTaskError,
    ValidationError,
)
from imagen.core.models import RunPhase, TaskKind, WorkflowType
from imagen.core.nesting import validate_no_illegal_nesting
from imagen.core.progress import ProgressChannel, generate_task_id
from imagen.core.session import EngineSessionState
from imagen.core.workflows import FieldBinding, TaskSpec, WorkflowDefinition, WorkflowStore
from imagen.engine.client import CLIENT_ID, IMPORTANT_NODE_TYPES, EngineClient
from imagen.llm.client import LLMClient
from imagen.processors.nested import new_seed
from imagen.processors.registry import ExecutionContext, run_process

logger = logging.getLogger(__name__)

REQUEST_BLANK_FIELDS = ("tags", "prompt", "description", "summary")
RESULT_BLANK_FIELDS = ("description", "summary", "tags")


@dataclass
class StepPlan:
    pre_count: int = 0
    post_count: int = 0
    important_nodes: set[str] = field(default_factory=set)

    @property
    def node_count(self) -> int:
        return len(self.important_nodes)

    @property
    def total(self) -> int:
        return self.pre_count + self.node_count + self.post_count


def build_plan(definition: WorkflowDefinition, graph: dict[str, Any]) -> StepPlan:
    important = {
        node_id
        for node_id, node in graph.items()
        if isinstance(node, dict) and node.get("class_type") in IMPORTANT_NODE_TYPES
    }
    return StepPlan(
        pre_count=sum(1 for t in definition.pre_tasks if t.countable),
        post_count=sum(1 for t in definition.post_tasks if t.countable),
        important_nodes=important,
    )


def find_next_index(prefix: str, folder: Path) -> int:
    """One past the highest ``<prefix>_<n>.<ext>`` index in ``folder``."""
    pattern = re.compile(rf"^{re.escape(prefix)}_(\d+)\.[a-zA-Z0-9]+$")
    indices = [
        int(m.group(1))
        for m in (pattern.match(p.name) for p in folder.iterdir() if p.is_file())
        if m
    ]
    return max(indices, default=0) + 1


def set_path_value(obj: dict[str, Any], path: list[str], value: Any) -> dict[str, Any]:
    """Return a copy of ``obj`` with ``value`` written at the nested key path."""
    if not path:
        return value
    head, *rest = path
    updated = dict(obj or {})
    if rest:
        child = updated.get(head)
        updated[head] = set_path_value(child if isinstance(child, dict) else {}, rest, value)
    else:
        updated[head] = value
    return updated


def bind_fields(
    graph: dict[str, Any], bindings: list[FieldBinding], data: dict[str, Any]
) -> dict[str, Any]:
    for binding in bindings:
        if not check_condition(binding.condition, data):
            logger.debug("Skipping field binding to %s, condition not met", binding.target_path)
            continue
        if binding.has_literal:
            value = binding.literal_value
        elif binding.source:
            value = data.get(binding.source)
        else:
            value = None
        if value is None:
            continue
        if binding.prefix or binding.postfix:
            value = f"{binding.prefix or ''}{value}{binding.postfix or ''}"
        graph = set_path_value(graph, binding.target_path, value)
    return graph


def apply_math_task(task: TaskSpec, data: dict[str, Any]) -> None:
    try:
        value = float(data.get(task.from_))
    except (TypeError, ValueError):
        raise ProcessTaskError(f'Math task source field "{task.from_}" is not a number')
    for step in task.math:
        value = (value + step.offset) * step.scale + step.bias
        if step.round == "floor":
            value = math.floor(value)
        elif step.round == "ceil":
            value = math.ceil(value)
    data[task.to] = value


def apply_copy_task(task: TaskSpec, data: dict[str, Any]) -> None:
    if not task.to:
        raise PromptTaskError('Generation task missing required "to" field')
    if not task.from_:
        raise PromptTaskError(
            f'Generation task for "{task.to}" must have one of: "from", "template", or "prompt"'
        )
    value = data.get(task.from_)
    if is_blank(value):
        raise PromptTaskError(
            f'Generation task for "{task.to}": source field "{task.from_}" not found or empty'
        )
    data[task.to] = value


def validate_conditions(definition: WorkflowDefinition) -> None:
    """Parse every task and binding condition so a bad one fails before the run starts."""
    guarded = [*definition.pre_tasks, *definition.post_tasks, *definition.field_bindings]
    for item in guarded:
        if item.condition is None:
            continue
        try:
            parse_condition(item.condition)
        except ValidationError as e:
            raise ValidationError(
                f"Workflow '{definition.name}' has an invalid condition: {e.message}",
                details=e.details,
            )


INPAINT_AREA_KEYS = ("x1", "y1", "x2", "y2")


def parse_inpaint_area(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        area = json.loads(raw)
    except ValueError:
        raise ValidationError("Invalid inpaintArea JSON format")
    if not isinstance(area, dict) or not all(
        isinstance(area.get(key), (int, float)) and not isinstance(area.get(key), bool)
        for key in INPAINT_AREA_KEYS
    ):
        raise ValidationError(
            "Invalid inpaintArea format - must contain x1, y1, x2, y2 coordinates"
        )
    return area


def fill_request_defaults(request_data: dict[str, Any]) -> None:
    seed = request_data.get("seed")
    if is_blank(seed):
        request_data["seed"] = new_seed()
    elif isinstance(seed, str) and seed.strip().isdigit():
        request_data["seed"] = int(seed)
    for name in REQUEST_BLANK_FIELDS:
        if request_data.get(name) is None:
            request_data[name] = ""


class GenerationOrchestrator:
    def __init__(
        self,
        channel: ProgressChannel,
        engine: EngineClient,
        llm: LLMClient,
        store: WorkflowStore,
        catalog,
        session: EngineSessionState,
        storage_dir: str | Path | None = None,
        logs_dir: str | Path | None = None,
        poll_attempts: int | None = None,
        poll_interval: float | None = None,
    ):
        self.channel = channel
        self.engine = engine
        self.llm = llm
        self.store = store
        self.catalog = catalog
        self.session = session
        self.storage_dir = Path(storage_dir or config.STORAGE_DIR)
        self.logs_dir = Path(logs_dir or config.LOGS_DIR)
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval
        self._background: set[asyncio.Task] = set()

    # ── Request intake ──────────────────────────────────────────────────────

    async def prepare_request(
        self,
        request_data: dict[str, Any],
        files: dict[str, tuple[bytes, str]] | None = None,
        staged: tuple[str, ...] = (),
    ) -> WorkflowDefinition:
        """Validate a request and upload its files; nothing is started here.

        ``files`` maps form field names (``image_0``, ``audio_0``...) to
        ``(content, original_filename)``. ``staged`` names media inputs the
        caller uploads itself; they count toward the required inputs.
        """
        name = request_data.get("workflow")
        if not name:
            raise ValidationError("Workflow parameter is required")

        document = self.store.load()
        definition = document.find(name)
        if definition is None:
            raise ValidationError(f"Workflow '{name}' not found")

        fill_request_defaults(request_data)
        files = files or {}

        provided = {*files, *staged}
        images = sum(1 for f in provided if f.startswith("image_"))
        audios = sum(1 for f in provided if f.startswith("audio_"))
        required_images = definition.options.input_images
        required_audios = definition.options.input_audios
        if required_images and images < required_images:
            raise ValidationError(
                f"Workflow requires {required_images} input image(s), "
                f"but only {images} were provided"
            )
        if required_audios and audios < required_audios:
            raise ValidationError(
                f"Workflow requires {required_audios} input audio file(s), "
                f"but only {audios} were provided"
            )

        check = validate_no_illegal_nesting(definition, document.workflows)
        if not check.valid:
            raise ValidationError("Workflow validation failed", details=check.error)
        validate_conditions(definition)

        await self._upload_request_files(definition, request_data, files)
        return definition

    async def _upload_request_files(self, definition, request_data, files):
        for upload in definition.upload:
            source = upload.source
            if source not in files:
                continue
            content, original_name = files[source]
            kind = "audio" if source.startswith("audio_") else "image"

            filename = None
            uid = request_data.get(f"{source}_uid")
            if not is_blank(uid):
                try:
                    entry = self.catalog.find_by_uid(int(uid))
                except ValueError:
                    raise ValidationError(f"Invalid uid for {source}: {uid}")
                url = entry.get(f"{kind}Url") if entry else None
                if url:
                    filename = url.removeprefix("/media/")
            if not filename:
                ext = Path(original_name or "").suffix or (".mp3" if kind == "audio" else ".png")
                filename = f"{kind}_{int(time.time() * 1000)}{ext}"

            result = await self.engine.upload_media(content, filename, kind, "input", overwrite=True)
            request_data[f"{source}_filename"] = result.filename
            logger.info("Uploaded %s for field '%s' as %s", kind, source, result.filename)

    def initialize_run(
        self,
        request_data: dict[str, Any],
        definition: WorkflowDefinition,
        task_id: str | None = None,
    ) -> str:
        task_id = task_id or generate_task_id()
        self.channel.create_run(
            task_id,
            workflow=definition.name,
            request_data=dict(request_data),
            workflow_definition=definition,
        )
        logger.info("Created task %s for workflow %s", task_id, definition.name)
        return task_id

    async def start_generation(
        self,
        request_data: dict[str, Any],
        files: dict[str, tuple[bytes, str]] | None = None,
    ) -> str:
        definition = await self.prepare_request(request_data, files)
        task_id = self.initialize_run(request_data, definition)
        self._spawn(self._process_detached(task_id, request_data, definition))
        return task_id

    async def start_inpaint(
        self,
        request_data: dict[str, Any],
        image: tuple[bytes, str] | None,
        mask: tuple[bytes, str] | None,
    ) -> str:
        """Start an inpaint run: the source image becomes ``image_0`` and the mask ``mask``."""
        for name in ("workflow", "name", "prompt"):
            if is_blank(request_data.get(name)):
                raise ValidationError(f"{name.capitalize()} parameter is required")
        inpaint_area = parse_inpaint_area(request_data.get("inpaintArea"))
        if image is None or mask is None:
            raise ValidationError("Both image and mask files are required")

        definition = await self.prepare_request(request_data, staged=("image_0",))

        stamp = int(time.time() * 1000)
        image_url = request_data.pop("imageUrl", None)
        if image_url:
            image_name = image_url.removeprefix("/media/")
        else:
            image_name = f"inpaint_image_{stamp}.png"
        mask_name = request_data.pop("maskFilename", None) or f"mask_{stamp}.png"
        image_result, mask_result = await asyncio.gather(
            self.engine.upload_media(image[0], image_name, "image", "input", overwrite=True),
            self.engine.upload_media(mask[0], mask_name, "image", "input", overwrite=True),
        )
        logger.info(
            "Uploaded inpaint image %s and mask %s", image_result.filename, mask_result.filename
        )

        request_data["image_0_filename"] = image_result.filename
        request_data["mask_filename"] = mask_result.filename
        request_data["inpaint"] = True
        request_data["inpaintArea"] = inpaint_area

        task_id = self.initialize_run(request_data, definition)
        self._spawn(self._process_detached(task_id, request_data, definition))
        return task_id

    async def generate_sync(self, request_data: dict[str, Any]) -> dict[str, Any]:
        """Run a generation to completion without writing a catalog entry."""
        definition = await self.prepare_request(request_data)
        task_id = self.initialize_run(request_data, definition)
        return await self.process(task_id, request_data, definition, silent=True)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _process_detached(self, task_id, request_data, definition):
        try:
            await self.process(task_id, request_data, definition)
        except ImagenError as e:
            logger.error("Background task %s failed: %s", task_id, e.message)
        except Exception:
            logger.exception("Background task %s crashed", task_id)

    # ── Pipeline ────────────────────────────────────────────────────────────

    async def process(
        self,
        task_id: str,
        request_data: dict[str, Any],
        definition: WorkflowDefinition,
        silent: bool = False,
        nested: bool = False,
    ) -> dict[str, Any]:
        if self.channel.get_run(task_id) is None:
            self.initialize_run(request_data, definition, task_id)
        try:
            return await self._execute(task_id, request_data, definition, silent, nested)
        except ImagenError as e:
            logger.error("Task %s failed: %s", task_id, e.message)
            self.channel.emit_error(task_id, "Failed to process generation request", e.message)
            raise
        except Exception as e:
            logger.exception("Task %s failed unexpectedly", task_id)
            self.channel.emit_error(task_id, "Failed to process generation request", str(e))
            raise

    async def _execute(self, task_id, request_data, definition, silent, nested=False):
        run = self.channel.get_run(task_id)
        if not nested:
            self.llm.reset_prompt_log()
        data = dict(request_data)
        for key, value in definition.option_defaults().items():
            data.setdefault(key, value)
        data["type"] = definition.output_type

        graph = self.store.load_template(definition.base_path)
        plan = build_plan(definition, graph)
        logger.info(
            "Step plan for %s: pre=%d nodes=%d post=%d total=%d",
            task_id, plan.pre_count, plan.node_count, plan.post_count, plan.total,
        )
        self.channel.update_run(
            task_id,
            phase=RunPhase.PRE_TASKS,
            graph=graph,
            total_steps=plan.total,
            current_step=0,
            pre_gen_count=plan.pre_count,
            important_node_count=plan.node_count,
            post_gen_count=plan.post_count,
            important_nodes=set(plan.important_nodes),
            processed_nodes=set(),
        )

        context = ExecutionContext(
            storage_dir=self.storage_dir,
            run_workflow=self.run_nested,
            upload=self._upload_for_nested,
        )

        await self._run_pre_tasks(task_id, definition.pre_tasks, data, context)

        self.channel.update_run(task_id, phase=RunPhase.ENGINE_SUBMISSION)
        self._assign_output_paths(definition, data)
        graph = bind_fields(graph, definition.field_bindings, data)
        self.channel.update_run(task_id, graph=graph)
        self._write_debug_graph(graph)

        if self.session.switch_workflow(definition.base_path):
            logger.info("Workflow template changed, freeing engine memory")
            await self.engine.free_memory()

        job_id = await self.engine.submit(graph, CLIENT_ID)
        self.channel.link_external_job_id(task_id, job_id)
        self.channel.update_run(task_id, phase=RunPhase.ENGINE_EXECUTING)
        logger.info("Task %s linked to job %s, waiting for completion", task_id, job_id)

        status = await self.engine.await_completion(
            job_id, self.poll_attempts, self.poll_interval
        )
        if status.errored:
            raise EngineExecutionError(
                "Engine generation failed",
                details=json.dumps(status.data.get("status") or {}),
            )
        self.channel.set_step(task_id, plan.pre_count + plan.node_count)

        self.channel.update_run(task_id, phase=RunPhase.POST_TASKS)
        warnings = await self._run_post_tasks(task_id, definition.post_tasks, data, context)

        self.channel.update_run(task_id, phase=RunPhase.FINALIZING)
        return self._finalize(run, definition, data, warnings, silent)

    async def _run_task(self, task_id, task: TaskSpec, data, context):
        kind = task.kind
        if kind == TaskKind.MATH:
            apply_math_task(task, data)
            return
        if kind == TaskKind.COPY:
            apply_copy_task(task, data)
            return

        label = task.display_name()
        self._emit_step(task_id, f"{label}...")
        if kind == TaskKind.PROCESS:
            await run_process(task.process, task.parameters, data, context)
        else:
            await self.llm.apply_prompt_task(task, data)
        self.channel.advance_step(task_id)
        self._emit_step(task_id, f"{label} complete")

    def _emit_step(self, task_id, label):
        self.channel.emit_progress(task_id, self.channel.step_progress(task_id), label)

    async def _run_pre_tasks(self, task_id, tasks, data, context):
        if tasks:
            logger.info("Processing %d pre-generation tasks", len(tasks))
        for task in tasks:
            try:
                if not check_condition(task.condition, data):
                    logger.info("Skipping pre-generation task %s, condition not met", task.display_name())
                    if task.countable:
                        self.channel.advance_step(task_id)
                    continue
                await self._run_task(task_id, task, data, context)
            except ImagenError as e:
                raise PreGenerationTaskError(f"Pre-generation failed: {e.message}", details=e.details)

    async def _run_post_tasks(self, task_id, tasks, data, context) -> list[str]:
        warnings = []
        if tasks:
            logger.info("Processing %d post-generation tasks", len(tasks))
        for task in tasks:
            try:
                if not check_condition(task.condition, data):
                    logger.info("Skipping post-generation task %s, condition not met", task.display_name())
                    if task.countable:
                        self.channel.advance_step(task_id)
                    continue
                await self._run_task(task_id, task, data, context)
            except (NestedWorkflowError, ValidationError):
                raise
            except ImagenError as e:
                if task.kind != TaskKind.PROMPT:
                    raise PostGenerationProcessError(
                        f"Post-generation task failed: {e.message}", details=e.details
                    )
                warning = PostGenerationPromptError(task.to, e.message)
                logger.warning(warning.message)
                warnings.append(warning.message)
                if not data.get(task.to):
                    data[task.to] = (
                        "Image analysis unavailable" if task.to == "description" else "Generated Content"
                    )
                self.channel.advance_step(task_id)
        return warnings

    def _assign_output_paths(self, definition: WorkflowDefinition, data: dict[str, Any]):
        is_audio = definition.options.type == WorkflowType.AUDIO
        image_format = data.get("imageFormat")
        audio_format = data.get("audioFormat")
        if not is_audio and not image_format:
            raise ConfigError(
                "imageFormat is required but not found in generation data. "
                "Check workflow configuration and extra inputs."
            )
        if is_audio and not audio_format:
            raise ConfigError(
                "audioFormat is required for audio workflows but not found in generation data."
            )

        self.storage_dir.mkdir(parents=True, exist_ok=True)
        if not data.get("saveImagePath"):
            index = find_next_index("image", self.storage_dir)
            data["saveImagePath"] = str(self.storage_dir / f"image_{index}.{image_format or 'png'}")
        image_path = Path(data["saveImagePath"])
        data["saveImageFilename"] = image_path.stem
        data["imageUrl"] = f"/media/{image_path.name}"

        if is_audio:
            audio_name = f"audio_{find_next_index('audio', self.storage_dir)}.{audio_format}"
            data["saveAudioPath"] = str(self.storage_dir / audio_name)
            data["audioUrl"] = f"/media/{audio_name}"

    def _write_debug_graph(self, graph):
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            path = self.logs_dir / "sent-workflow.json"
            path.write_text(json.dumps(graph, indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning("Could not write debug workflow: %s", e)

    def _finalize(self, run, definition, data, warnings, silent) -> dict[str, Any]:
        if definition.options.type == WorkflowType.AUDIO:
            if not Path(data["saveAudioPath"]).is_file():
                raise OutputMissingError(f"Generated audio file not found at: {data['saveAudioPath']}")
            if not Path(data.get("saveImagePath") or "").is_file():
                for key in ("saveImagePath", "imageUrl", "saveImageFilename"):
                    data.pop(key, None)
        elif not Path(data.get("saveImagePath") or "").is_file():
            raise OutputMissingError(f"Generated image file not found at: {data.get('saveImagePath')}")

        data["workflow"] = definition.name
        data["inpaint"] = (
            data.get("inpaint") is True or definition.options.type == WorkflowType.INPAINT
        )
        data.setdefault("inpaintArea", None)
        data["timeTaken"] = round(time.monotonic() - run.start_time)
        for name in RESULT_BLANK_FIELDS:
            if not data.get(name):
                data[name] = ""

        if silent:
            logger.info("Silent mode: skipping catalog entry for task %s", run.task_id)
        else:
            entry = self.catalog.add_entry(data)
            data.update(uid=entry["uid"], timestamp=entry["timestamp"], folder=entry["folder"])
            logger.info("Catalog entry saved with uid %s", entry["uid"])

        result = {**data, "totalSteps": run.total_steps, "warnings": warnings}
        if warnings:
            logger.info("Task %s completed with %d warning(s)", run.task_id, len(warnings))
        self.channel.emit_completion(run.task_id, result)
        logger.info("Task %s completed in %ss", run.task_id, data["timeTaken"])
        return result

    # ── Nested workflows ────────────────────────────────────────────────────

    async def run_nested(self, workflow_name: str, request_data: dict[str, Any]) -> dict[str, Any]:
        definition = self.store.load().find(workflow_name)
        if definition is None:
            raise ConfigError(f'Target workflow "{workflow_name}" not found')
        validate_conditions(definition)
        task_id = self.initialize_run(request_data, definition)
        try:
            return await self.process(task_id, request_data, definition, silent=True, nested=True)
        finally:
            self.channel.delete_run(task_id)

    async def _upload_for_nested(self, content: bytes, filename: str, kind: str) -> str:
        result = await self.engine.upload_media(content, filename, kind, "input", overwrite=True)
        return result.filename

    # ── Regeneration ────────────────────────────────────────────────────────

    def start_regeneration(self, entry: dict[str, Any], fields: list[str]) -> str:
        if not fields:
            raise ValidationError("Missing or invalid fields array")
        uid = entry["uid"]
        task_id = f"regenerate-{uid}-{int(time.time() * 1000)}"
        self.channel.create_run(
            task_id,
            workflow=entry.get("workflow"),
            request_data={"uid": uid, "fields": list(fields)},
            total_steps=len(fields),
        )
        self._spawn(self._regenerate_detached(task_id, entry, fields))
        return task_id

    async def _regenerate_detached(self, task_id, entry, fields):
        try:
            await self.regenerate_fields(task_id, entry, fields)
        except ImagenError as e:
            logger.error("Regeneration %s failed: %s", task_id, e.message)

    async def regenerate_fields(
        self, task_id: str, entry: dict[str, Any], fields: list[str]
    ) -> dict[str, Any]:
        """Re-run the default prompt tasks that write ``fields`` for a catalog entry."""
        data = dict(entry)
        if data.get("imageUrl"):
            data["saveImagePath"] = str(self.storage_dir / data["imageUrl"].removeprefix("/media/"))

        try:
            default_tasks = self.store.load().default_tasks
            for name in fields:
                task = next((t for t in default_tasks if t.to == name), None)
                if task is None:
                    self._emit_step(task_id, f"Skipping {name} - no task configured")
                    self.channel.advance_step(task_id)
                    continue
                self._emit_step(task_id, f"Regenerating {name}...")
                if task.kind == TaskKind.COPY:
                    apply_copy_task(task, data)
                else:
                    await self.llm.apply_prompt_task(task, data)
                self.channel.advance_step(task_id)

            data.pop("saveImagePath", None)
            updated = self.catalog.update_entry(data["uid"], data)
            if updated is None:
                raise ValidationError(f"Media entry {data['uid']} no longer exists")
        except ImagenError as e:
            self.channel.emit_error(task_id, f"Regeneration failed: {e.message}", e.details)
            raise

        self.channel.emit_completion(
            task_id, {**updated, "totalSteps": len(fields), "warnings": []}
        )
        logger.info("Regeneration completed for uid %s", data["uid"])
        return updated
