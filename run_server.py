import uvicorn

from imagen import config

if __name__ == "__main__":
    uvicorn.run(
        "imagen.main:app",
        host=config.HOST,
        port=config.PORT,
        log_level="info",
    )
