import os

COMFYUI_API_URL = os.getenv("IMAGEN_COMFYUI_URL", "http://127.0.0.1:8188").rstrip("/")

OLLAMA_API_URL = os.getenv("IMAGEN_OLLAMA_URL", "http://127.0.0.1:11434").rstrip("/")
OLLAMA_USE_CPU = os.getenv("IMAGEN_OLLAMA_USE_CPU", "false").lower() in ("1", "true", "yes")

STORAGE_DIR = os.getenv("IMAGEN_STORAGE_DIR", "storage")
LOGS_DIR = os.getenv("IMAGEN_LOGS_DIR", "logs")

WORKFLOWS_PATH = os.getenv("IMAGEN_WORKFLOWS_PATH", "resource/comfyui-workflows.json")
TEMPLATES_DIR = os.getenv("IMAGEN_TEMPLATES_DIR", "resource/workflows")

DATABASE_PATH = os.getenv("IMAGEN_DB_PATH", "imagen.db")
DATABASE_URL = f"sqlite:///{DATABASE_PATH}"

HOST = os.getenv("IMAGEN_HOST", "127.0.0.1")
PORT = int(os.getenv("IMAGEN_PORT", "3000"))

# Seconds a finished run stays queryable before eviction
TASK_CLEANUP_DELAY = float(os.getenv("IMAGEN_TASK_CLEANUP_DELAY", "300"))

ENGINE_POLL_ATTEMPTS = int(os.getenv("IMAGEN_ENGINE_POLL_ATTEMPTS", "1800"))
ENGINE_POLL_INTERVAL = float(os.getenv("IMAGEN_ENGINE_POLL_INTERVAL", "1.0"))

SSE_PING_INTERVAL = int(os.getenv("IMAGEN_SSE_PING_INTERVAL", "30"))
EVENT_BUFFER_SIZE = int(os.getenv("IMAGEN_EVENT_BUFFER_SIZE", "500"))

WS_RECONNECT_DELAY = float(os.getenv("IMAGEN_WS_RECONNECT_DELAY", "3.0"))
