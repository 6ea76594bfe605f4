import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class RunPhase(str, Enum):
    CREATED = "CREATED"
    PRE_TASKS = "PRE_TASKS"
    ENGINE_SUBMISSION = "ENGINE_SUBMISSION"
    ENGINE_EXECUTING = "ENGINE_EXECUTING"
    POST_TASKS = "POST_TASKS"
    FINALIZING = "FINALIZING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (RunPhase.COMPLETED, RunPhase.FAILED)


class EventStatus(str, Enum):
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    ERROR = "error"


class TaskKind(str, Enum):
    PROCESS = "process"
    PROMPT = "prompt"
    MATH = "math"
    COPY = "copy"


class WorkflowType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    INPAINT = "inpaint"


@dataclass
class GenerationRun:
    """Working state of one generation request, owned by the progress channel."""

    task_id: str
    workflow: str | None = None
    request_data: dict[str, Any] = field(default_factory=dict)
    workflow_definition: Any = None
    phase: RunPhase = RunPhase.CREATED
    job_id: str | None = None
    start_time: float = field(default_factory=time.monotonic)

    total_steps: int = 0
    current_step: int = 0
    pre_gen_count: int = 0
    important_node_count: int = 0
    post_gen_count: int = 0
    important_nodes: set[str] = field(default_factory=set)
    processed_nodes: set[str] = field(default_factory=set)
    graph: dict[str, Any] | None = None

    percentage: int = 0
    label: str = "Starting..."
    result: dict[str, Any] | None = None
    error: dict[str, str] | None = None

    subscribers: set = field(default_factory=set)
    buffer: deque = field(default_factory=deque)
