from dataclasses import dataclass


@dataclass
class EngineSessionState:
    """What is currently loaded on the shared backends.

    ``last_workflow`` is written only by the orchestrator and ``last_model``
    only by the LLM client. Both exist so a backend is asked to free memory
    only when the next request actually needs something different.
    """

    last_workflow: str | None = None
    last_model: str | None = None

    def switch_workflow(self, base_path: str) -> bool:
        """Record ``base_path`` as current; True when it replaces a different one."""
        changed = self.last_workflow is not None and self.last_workflow != base_path
        self.last_workflow = base_path
        return changed

    def switch_model(self, model: str) -> str | None:
        """Record ``model`` as current; return the previous model when it changed."""
        previous = self.last_model
        self.last_model = model
        if previous is not None and previous != model:
            return previous
        return None
