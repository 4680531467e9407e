import logging
import os
from contextlib import asynccontextmanager

import structlog
from dotenv import load_dotenv
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from routes.vcc import get_coordinator, reset_coordinator, router as vcc_router
from vcc.pipeline import PipelineCoordinator

load_dotenv()

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper(), format="%(message)s")
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    logger_factory=structlog.stdlib.LoggerFactory(),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # releases the oracle executor held by the shared comparator
    reset_coordinator()


app = FastAPI(title="Versioned Clause Comparer API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("VCC_CORS_ORIGINS", "*").split(","),
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(vcc_router)


@app.get("/")
async def root():
    return {"message": "Versioned Clause Comparer API", "status": "running"}


@app.get("/health")
def health(coordinator: PipelineCoordinator = Depends(get_coordinator)):
    config = coordinator.registry.current()
    return {
        "status": "healthy",
        "service": "versioned-clause-comparer",
        "config_version": config.version,
        "oracle": coordinator.oracle.model_version if coordinator.oracle is not None else "rules",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
