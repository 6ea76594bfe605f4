from imagen import config
from imagen.core.orchestrator import GenerationOrchestrator
from imagen.core.progress import ProgressChannel
from imagen.core.session import EngineSessionState
from imagen.core.workflows import WorkflowStore
from imagen.db.catalog import MediaCatalog
from imagen.engine.client import EngineClient
from imagen.llm.client import LLMClient

channel = ProgressChannel()
session = EngineSessionState()
store = WorkflowStore()
engine_client = EngineClient()
llm_client = LLMClient(session)

orchestrator = GenerationOrchestrator(
    channel=channel,
    engine=engine_client,
    llm=llm_client,
    store=store,
    catalog=MediaCatalog(),
    session=session,
    poll_attempts=config.ENGINE_POLL_ATTEMPTS,
    poll_interval=config.ENGINE_POLL_INTERVAL,
)


def get_orchestrator() -> GenerationOrchestrator:
    return orchestrator


def get_channel() -> ProgressChannel:
    return channel


def get_store() -> WorkflowStore:
    return store
