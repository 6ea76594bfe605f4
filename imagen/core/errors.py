class ImagenError(Exception):
    """Base class for every failure the generation pipeline reports."""

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or message


class ConfigError(ImagenError):
    """Workflow document, template file or required setting is missing or malformed."""


class ValidationError(ImagenError):
    """The request or workflow graph is not acceptable; raised before a run starts."""


class PreGenerationTaskError(ImagenError):
    pass


class EngineNotInitializedError(ImagenError):
    pass


class EngineSubmissionError(ImagenError):
    """Transport-level failure talking to the compute engine."""


class UploadError(EngineSubmissionError):
    pass


class SubmissionError(EngineSubmissionError):
    pass


class EngineExecutionError(ImagenError):
    """The engine accepted the graph but reported its own execution error."""


class EngineTimeoutError(ImagenError, TimeoutError):
    pass


class ProcessTaskError(ImagenError):
    pass


class PromptTaskError(ImagenError):
    pass


class PostGenerationProcessError(ImagenError):
    pass


class PostGenerationPromptError(ImagenError):
    """Recoverable: recorded as a warning, the run still completes."""

    def __init__(self, field: str, message: str):
        super().__init__(f"Failed to generate {field}: {message}")
        self.field = field


class OutputMissingError(ImagenError):
    pass


class NestedWorkflowError(ImagenError):
    def __init__(self, workflow: str, message: str):
        super().__init__(f'Nested workflow "{workflow}" failed: {message}')
        self.workflow = workflow
