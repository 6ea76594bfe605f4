import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from imagen import config, services
from imagen.api.routes import router
from imagen.db.database import init_db
from imagen.engine.events import EngineEventListener

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)

listener = EngineEventListener(services.channel, config.COMFYUI_API_URL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    Path(config.STORAGE_DIR).mkdir(parents=True, exist_ok=True)
    Path(config.LOGS_DIR).mkdir(parents=True, exist_ok=True)
    services.engine_client.initialize(config.COMFYUI_API_URL)
    task = asyncio.create_task(listener.run())
    yield
    task.cancel()


app = FastAPI(title="Imagen Server", lifespan=lifespan)
app.include_router(router)
app.mount(
    "/media", StaticFiles(directory=config.STORAGE_DIR, check_dir=False), name="media"
)
