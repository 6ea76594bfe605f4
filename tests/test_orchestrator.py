import asyncio
import json
from pathlib import Path

import pytest

from imagen.core.errors import (
    ConfigError,
    EngineExecutionError,
    NestedWorkflowError,
    OutputMissingError,
    PostGenerationProcessError,
    PreGenerationTaskError,
    ProcessTaskError,
    PromptTaskError,
    ValidationError,
)
from imagen.core.models import RunPhase
from imagen.core.orchestrator import (
    apply_copy_task,
    apply_math_task,
    bind_fields,
    find_next_index,
    parse_inpaint_area,
    set_path_value,
)
from imagen.core.workflows import FieldBinding, TaskSpec
from imagen.processors.nested import MAX_SEED


async def _run(orchestrator, request):
    definition = await orchestrator.prepare_request(request)
    task_id = orchestrator.initialize_run(request, definition)
    return task_id, definition


# ── Helpers ─────────────────────────────────────────────────────────────────


def test_find_next_index(tmp_path):
    assert find_next_index("image", tmp_path) == 1
    (tmp_path / "image_3.png").write_bytes(b"")
    (tmp_path / "image_12.webp").write_bytes(b"")
    (tmp_path / "audio_40.mp3").write_bytes(b"")
    (tmp_path / "image_notes.txt").write_bytes(b"")
    assert find_next_index("image", tmp_path) == 13
    assert find_next_index("audio", tmp_path) == 41


def test_set_path_value_copies_and_creates_missing_levels():
    graph = {"3": {"inputs": {"seed": 0, "steps": 20}}}
    updated = set_path_value(graph, ["3", "inputs", "seed"], 7)
    updated = set_path_value(updated, ["10", "inputs", "image"], "a.png")

    assert updated["3"]["inputs"] == {"seed": 7, "steps": 20}
    assert updated["10"] == {"inputs": {"image": "a.png"}}
    assert graph["3"]["inputs"]["seed"] == 0


def test_bind_fields_literal_prefix_and_condition():
    bindings = [
        FieldBinding.model_validate({"from": "prompt", "to": ["6", "text"], "prefix": "photo of "}),
        FieldBinding.model_validate({"value": 30, "to": ["3", "steps"]}),
        FieldBinding.model_validate({"from": "missing", "to": ["3", "cfg"]}),
        FieldBinding.model_validate(
            {
                "from": "lora",
                "to": ["4", "name"],
                "condition": {"where": {"data": "useLora"}, "equals": {"value": True}},
            }
        ),
    ]
    graph = bind_fields({}, bindings, {"prompt": "a cat", "lora": "x.safetensors", "useLora": "false"})

    assert graph == {"6": {"text": "photo of a cat"}, "3": {"steps": 30}}


def test_math_task_floors_to_int():
    task = TaskSpec.model_validate(
        {"from": "width", "to": "latent", "math": [{"offset": 1, "scale": 0.125, "round": "floor"}]}
    )
    data = {"width": "1022"}
    apply_math_task(task, data)
    assert data["latent"] == 127


def test_math_task_rejects_non_numeric_source():
    task = TaskSpec.model_validate({"from": "width", "to": "latent", "math": []})
    with pytest.raises(ProcessTaskError):
        apply_math_task(task, {"width": "wide"})


def test_copy_task_requires_non_blank_source():
    task = TaskSpec.model_validate({"from": "prompt", "to": "name"})
    data = {"prompt": "a cat"}
    apply_copy_task(task, data)
    assert data["name"] == "a cat"

    with pytest.raises(PromptTaskError, match="not found or empty"):
        apply_copy_task(task, {"prompt": "   "})


# ── Request intake ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_prepare_request_fills_seed_and_blank_fields(orchestrator):
    request = {"workflow": "Text to Image"}
    await orchestrator.prepare_request(request)

    assert 0 <= request["seed"] <= MAX_SEED
    for name in ("tags", "prompt", "description", "summary"):
        assert request[name] == ""


@pytest.mark.asyncio
async def test_prepare_request_rejects_unknown_workflow(orchestrator):
    with pytest.raises(ValidationError, match="not found"):
        await orchestrator.prepare_request({"workflow": "Nope"})


@pytest.mark.asyncio
async def test_missing_required_image_is_rejected_before_upload(orchestrator):
    with pytest.raises(ValidationError, match="requires 1 input image"):
        await orchestrator.prepare_request({"workflow": "Edit Image"})
    assert orchestrator.engine.uploads == []


@pytest.mark.asyncio
async def test_illegal_nesting_is_rejected(orchestrator):
    with pytest.raises(ValidationError) as excinfo:
        await orchestrator.prepare_request({"workflow": "Too Deep"})
    assert "Only one level of nesting" in excinfo.value.details


@pytest.mark.asyncio
async def test_malformed_task_condition_is_rejected_before_run(orchestrator):
    with pytest.raises(ValidationError, match="invalid condition") as excinfo:
        await orchestrator.prepare_request({"workflow": "Bad Tag Condition", "prompt": "a cat"})

    assert "must contain 'and', 'or' or 'where'" in excinfo.value.message
    assert orchestrator.engine.submitted == []
    assert orchestrator.llm.calls == []


@pytest.mark.asyncio
async def test_malformed_binding_condition_is_rejected_before_pre_tasks(orchestrator):
    with pytest.raises(ValidationError, match="invalid condition"):
        await orchestrator.prepare_request({"workflow": "Bad Binding Condition", "prompt": "a cat"})

    assert orchestrator.llm.calls == []
    assert orchestrator.engine.submitted == []


@pytest.mark.asyncio
async def test_nested_run_rejects_malformed_condition(orchestrator):
    with pytest.raises(ValidationError, match="invalid condition"):
        await orchestrator.run_nested("Bad Tag Condition", {"prompt": "a cat", "seed": 1})

    assert orchestrator.engine.submitted == []


@pytest.mark.asyncio
async def test_uploads_request_file_with_generated_name(orchestrator):
    request = {"workflow": "Edit Image"}
    await orchestrator.prepare_request(request, {"image_0": (b"png-bytes", "photo.png")})

    upload = orchestrator.engine.uploads[0]
    assert upload["overwrite"] is True
    assert upload["filename"].startswith("image_") and upload["filename"].endswith(".png")
    assert request["image_0_filename"] == upload["filename"]


@pytest.mark.asyncio
async def test_upload_reuses_catalog_file_name(orchestrator):
    entry = orchestrator.catalog.add_entry({"name": "old", "imageUrl": "/media/image_7.png"})
    request = {"workflow": "Edit Image", "image_0_uid": str(entry["uid"])}
    await orchestrator.prepare_request(request, {"image_0": (b"png-bytes", "blob")})

    assert orchestrator.engine.uploads[0]["filename"] == "image_7.png"
    assert request["image_0_filename"] == "image_7.png"


# ── Pipeline ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_generation_runs_post_tasks_and_saves_entry(orchestrator, tmp_path):
    request = {"workflow": "Text to Image", "prompt": "a cat", "seed": 42}
    task_id, definition = await _run(orchestrator, request)
    subscription = orchestrator.channel.subscribe(task_id)

    result = await orchestrator.process(task_id, request, definition)

    assert result["imageUrl"] == "/media/image_1.png"
    assert Path(result["saveImagePath"]).is_file()
    assert result["saveImageFilename"] == "image_1"
    assert result["description"] == "generated description"
    assert result["summary"] == "a cat (generated description)"
    assert result["type"] == "image"
    assert result["inpaint"] is False
    assert result["totalSteps"] == 4
    assert result["warnings"] == []
    assert orchestrator.catalog.find_by_uid(result["uid"])["prompt"] == "a cat"

    graph = orchestrator.engine.submitted[0]
    assert graph["6"]["inputs"]["text"] == "a cat"
    assert graph["3"]["inputs"]["seed"] == 42
    sent = json.loads((tmp_path / "logs" / "sent-workflow.json").read_text())
    assert sent == graph

    events = [event async for event in subscription]
    values = [e["progress"]["currentValue"] for e in events]
    assert values == sorted(values)
    assert events[-1]["status"] == "completed"
    assert events[-1]["progress"]["currentValue"] == events[-1]["progress"]["maxValue"] == 4
    assert events[-1]["result"]["uid"] == result["uid"]


@pytest.mark.asyncio
async def test_skipped_countable_pre_task_still_advances(orchestrator):
    request = {"workflow": "Enhanced Prompt", "prompt": "a cat", "width": "1023"}
    task_id, definition = await _run(orchestrator, request)
    run = orchestrator.channel.get_run(task_id)
    steps_at_submit = []
    orchestrator.engine.on_submit = lambda graph: steps_at_submit.append(run.current_step)

    result = await orchestrator.process(task_id, request, definition)

    assert run.total_steps == 3
    assert steps_at_submit == [1]
    assert orchestrator.engine.submitted[0]["6"]["inputs"]["text"] == "a cat"
    assert result["latentWidth"] == 127


@pytest.mark.asyncio
async def test_conditional_pre_task_runs_when_condition_met(orchestrator):
    request = {"workflow": "Enhanced Prompt", "prompt": "a cat", "width": "512", "enhance": "true"}
    task_id, definition = await _run(orchestrator, request)

    await orchestrator.process(task_id, request, definition)

    assert orchestrator.engine.submitted[0]["6"]["inputs"]["text"] == "a cat, highly detailed"


@pytest.mark.asyncio
async def test_post_generation_prompt_failure_is_tolerated(orchestrator):
    orchestrator.llm.fail_fields = {"description"}
    request = {"workflow": "Text to Image", "prompt": "a cat"}
    task_id, definition = await _run(orchestrator, request)

    result = await orchestrator.process(task_id, request, definition)

    assert result["description"] == "Image analysis unavailable"
    assert result["summary"] == "a cat (Image analysis unavailable)"
    assert result["warnings"] == ["Failed to generate description: model offline"]
    assert orchestrator.channel.get_run(task_id).phase == RunPhase.COMPLETED
    assert orchestrator.catalog.find_by_uid(result["uid"]) is not None


@pytest.mark.asyncio
async def test_post_task_condition_error_is_not_tolerated(orchestrator):
    request = {"workflow": "Bad Tag Condition", "prompt": "a cat", "seed": 1}
    definition = orchestrator.store.load().find("Bad Tag Condition")
    task_id = orchestrator.initialize_run(request, definition)

    with pytest.raises(ValidationError):
        await orchestrator.process(task_id, request, definition)

    assert orchestrator.llm.calls == []
    assert orchestrator.channel.get_run(task_id).phase == RunPhase.FAILED
    assert orchestrator.catalog.list_filtered() == []


@pytest.mark.asyncio
async def test_post_generation_process_failure_is_fatal(orchestrator):
    request = {"workflow": "Extract Lyrics", "prompt": "a song"}
    task_id, definition = await _run(orchestrator, request)
    subscription = orchestrator.channel.subscribe(task_id)

    with pytest.raises(PostGenerationProcessError, match="Output text file not found"):
        await orchestrator.process(task_id, request, definition)

    assert len(orchestrator.engine.submitted) == 1
    assert orchestrator.channel.get_run(task_id).phase == RunPhase.FAILED
    assert orchestrator.catalog.list_filtered() == []
    events = [event async for event in subscription]
    assert events[-1]["status"] == "error"
    assert events[-1]["error"]["details"].startswith("Post-generation task failed")


@pytest.mark.asyncio
async def test_post_generation_text_extraction(orchestrator, tmp_path):
    storage = tmp_path / "storage"
    storage.mkdir()
    (storage / "lyrics.txt").write_text("la la la\n")
    request = {"workflow": "Extract Lyrics", "prompt": "a song"}
    task_id, definition = await _run(orchestrator, request)

    result = await orchestrator.process(task_id, request, definition)

    assert result["lyrics"] == "la la la"
    assert orchestrator.catalog.find_by_uid(result["uid"])["lyrics"] == "la la la"


@pytest.mark.asyncio
async def test_pre_generation_prompt_failure_is_fatal(orchestrator):
    orchestrator.llm.fail_fields = {"prompt"}
    request = {"workflow": "Prompt Writer", "prompt": "a cat"}
    task_id, definition = await _run(orchestrator, request)
    subscription = orchestrator.channel.subscribe(task_id)

    with pytest.raises(PreGenerationTaskError, match="Pre-generation failed: model offline"):
        await orchestrator.process(task_id, request, definition)

    assert orchestrator.engine.submitted == []
    assert orchestrator.catalog.list_filtered() == []
    events = [event async for event in subscription]
    assert events[-1]["status"] == "error"
    assert events[-1]["error"]["message"] == "Failed to process generation request"
    assert events[-1]["error"]["details"] == "Pre-generation failed: model offline"


@pytest.mark.asyncio
async def test_engine_error_fails_run(orchestrator):
    orchestrator.engine.errored = True
    request = {"workflow": "Text to Image", "prompt": "a cat"}
    task_id, definition = await _run(orchestrator, request)

    with pytest.raises(EngineExecutionError):
        await orchestrator.process(task_id, request, definition)

    assert orchestrator.channel.get_run(task_id).phase == RunPhase.FAILED
    assert orchestrator.catalog.list_filtered() == []


@pytest.mark.asyncio
async def test_missing_output_file_fails_run(orchestrator):
    orchestrator.engine.write_output = False
    request = {"workflow": "Text to Image", "prompt": "a cat"}
    task_id, definition = await _run(orchestrator, request)

    with pytest.raises(OutputMissingError):
        await orchestrator.process(task_id, request, definition)


@pytest.mark.asyncio
async def test_missing_image_format_is_a_config_error(orchestrator):
    request = {"workflow": "No Format", "prompt": "a cat"}
    task_id, definition = await _run(orchestrator, request)

    with pytest.raises(ConfigError, match="imageFormat is required"):
        await orchestrator.process(task_id, request, definition)
    assert orchestrator.engine.submitted == []


@pytest.mark.asyncio
async def test_switching_template_frees_engine_memory(orchestrator):
    orchestrator.session.last_workflow = "other.json"
    request = {"workflow": "Text to Image", "prompt": "a cat"}
    task_id, definition = await _run(orchestrator, request)

    await orchestrator.process(task_id, request, definition)
    assert orchestrator.engine.freed == 1

    request = {"workflow": "Upscale", "prompt": "a dog"}
    task_id, definition = await _run(orchestrator, request)
    await orchestrator.process(task_id, request, definition)
    assert orchestrator.engine.freed == 1


@pytest.mark.asyncio
async def test_nested_workflow_runs_with_its_own_seed(orchestrator):
    request = {"workflow": "Generate And Upscale", "prompt": "a cat", "seed": 42}
    task_id, definition = await _run(orchestrator, request)

    result = await orchestrator.process(task_id, request, definition)

    parent_graph, child_graph = orchestrator.engine.submitted
    assert parent_graph["3"]["inputs"]["seed"] == 42
    assert child_graph["3"]["inputs"]["seed"] != 42
    assert child_graph["6"]["inputs"]["text"] == "a cat"
    assert result["upscaleSeed"] == child_graph["3"]["inputs"]["seed"]
    assert result["seed"] == 42
    assert orchestrator.engine.uploads[0]["filename"] == "image_1.png"
    assert result["imageUrl"] == "/media/image_2.png"
    assert len(orchestrator.catalog.list_filtered()) == 1


@pytest.mark.asyncio
async def test_nested_child_failure_fails_parent(orchestrator):
    orchestrator.engine.errored_jobs = {"job-2"}
    request = {"workflow": "Generate And Upscale", "prompt": "a cat", "seed": 42}
    task_id, definition = await _run(orchestrator, request)
    subscription = orchestrator.channel.subscribe(task_id)

    with pytest.raises(NestedWorkflowError) as excinfo:
        await orchestrator.process(task_id, request, definition)

    assert excinfo.value.message == 'Nested workflow "Upscale" failed: Engine generation failed'
    assert len(orchestrator.engine.submitted) == 2
    assert orchestrator.channel.get_run(task_id).phase == RunPhase.FAILED
    assert orchestrator.catalog.list_filtered() == []
    events = [event async for event in subscription]
    assert events[-1]["status"] == "error"
    assert "Nested workflow \"Upscale\" failed" in events[-1]["error"]["details"]


@pytest.mark.asyncio
async def test_prompt_log_is_reset_once_per_top_level_run(orchestrator):
    request = {"workflow": "Generate And Upscale", "prompt": "a cat", "seed": 42}
    task_id, definition = await _run(orchestrator, request)
    await orchestrator.process(task_id, request, definition)
    assert orchestrator.llm.resets == 1

    await orchestrator.generate_sync({"workflow": "Upscale", "prompt": "a dog"})
    assert orchestrator.llm.resets == 2


@pytest.mark.asyncio
async def test_sync_generation_skips_catalog(orchestrator):
    result = await orchestrator.generate_sync({"workflow": "Upscale", "prompt": "a dog"})

    assert Path(result["saveImagePath"]).is_file()
    assert "uid" not in result
    assert orchestrator.catalog.list_filtered() == []


@pytest.mark.asyncio
async def test_start_generation_runs_in_background(orchestrator):
    task_id = await orchestrator.start_generation({"workflow": "Upscale", "prompt": "a dog"})
    run = orchestrator.channel.get_run(task_id)

    for _ in range(100):
        if run.phase.terminal:
            break
        await asyncio.sleep(0.01)

    assert run.phase == RunPhase.COMPLETED
    assert run.result["workflow"] == "Upscale"


@pytest.mark.asyncio
async def test_inpaint_run_records_area_in_catalog(orchestrator):
    request = {
        "workflow": "Edit Image",
        "name": "Hat",
        "prompt": "a hat",
        "inpaintArea": '{"x1": 0, "y1": 0, "x2": 64.5, "y2": 64}',
    }
    task_id = await orchestrator.start_inpaint(
        request, (b"png-bytes", "photo.png"), (b"mask-bytes", "mask.png")
    )
    run = orchestrator.channel.get_run(task_id)

    for _ in range(100):
        if run.phase.terminal:
            break
        await asyncio.sleep(0.01)

    assert run.phase == RunPhase.COMPLETED
    graph = orchestrator.engine.submitted[0]
    assert graph["10"]["inputs"]["image"].startswith("inpaint_image_")
    entry = orchestrator.catalog.find_by_uid(run.result["uid"])
    assert entry["inpaint"] is True
    assert entry["inpaintArea"] == {"x1": 0, "y1": 0, "x2": 64.5, "y2": 64}


def test_parse_inpaint_area():
    assert parse_inpaint_area(None) is None
    assert parse_inpaint_area('{"x1": 1, "y1": 2, "x2": 3, "y2": 4}')["x2"] == 3
    with pytest.raises(ValidationError, match="JSON format"):
        parse_inpaint_area("[1, 2")
    with pytest.raises(ValidationError, match="x1, y1, x2, y2"):
        parse_inpaint_area('{"x1": true, "y1": 2, "x2": 3, "y2": 4}')
    with pytest.raises(ValidationError, match="x1, y1, x2, y2"):
        parse_inpaint_area("[1, 2, 3, 4]")


# ── Regeneration ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_regenerate_updates_configured_fields(orchestrator):
    entry = orchestrator.catalog.add_entry(
        {"name": "cat", "prompt": "a cat", "imageUrl": "/media/image_3.png", "description": "old"}
    )
    task_id = "regenerate-test"
    orchestrator.channel.create_run(task_id, total_steps=3)
    subscription = orchestrator.channel.subscribe(task_id)

    updated = await orchestrator.regenerate_fields(task_id, entry, ["description", "summary", "title"])

    assert updated["description"] == "generated description"
    assert updated["summary"] == "Summary of generated description"
    assert "saveImagePath" not in updated
    assert orchestrator.catalog.find_by_uid(entry["uid"])["description"] == "generated description"

    labels = [event["progress"]["currentStep"] async for event in subscription]
    assert "Regenerating description..." in labels
    assert "Skipping title - no task configured" in labels
    assert labels[-1] == "Complete"


@pytest.mark.asyncio
async def test_regeneration_requires_fields(orchestrator):
    with pytest.raises(ValidationError):
        orchestrator.start_regeneration({"uid": 1}, [])
