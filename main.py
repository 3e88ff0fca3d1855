"""
Result Engine API Server Entry Point

  uvicorn main:app --host 0.0.0.0 --port $PORT
"""

import logging

from fastapi import FastAPI

from result_engine import __version__
from result_engine.api import router as results_router
from result_engine.config import EngineSettings, configure_logging

settings = EngineSettings.from_env()
configure_logging(settings.log_level)

logger = logging.getLogger("result_engine.main")

app = FastAPI(
    title="Result Validation & Lifecycle Engine",
    version=__version__,
)
app.include_router(results_router)
logger.info(f"Result engine API v{__version__} routes registered (store={settings.store})")


@app.get("/")
def root():
    return {"service": "result-engine", "version": __version__, "status": "ok"}


# For local development
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
