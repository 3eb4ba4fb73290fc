from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.api.adaptive import router as adaptive_router
from app.api.attempts import router as attempts_router
from app.api.health import router as health_router
from app.api.metrics import router as metrics_router
from app.core.auth import internal_api_key_middleware
from app.core.errors import (
    AdaptiveEngineError,
    engine_exception_handler,
    http_exception_handler,
    request_id_middleware,
    unhandled_exception_handler,
    validation_exception_handler,
)
from app.core.logging import configure_logging
from app.core.settings import settings
from app.runtime.container import EngineRuntime


configure_logging(settings.log_level)

app = FastAPI(title="Skill Profile Engine API", version="0.1.0")
app.include_router(health_router)
app.include_router(attempts_router)
app.include_router(adaptive_router)
app.include_router(metrics_router)
app.middleware("http")(internal_api_key_middleware)
app.middleware("http")(request_id_middleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(AdaptiveEngineError, engine_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)


@app.on_event("startup")
async def on_startup():
    runtime = EngineRuntime(settings)
    await runtime.start()
    app.state.runtime = runtime


@app.on_event("shutdown")
async def on_shutdown():
    runtime = getattr(app.state, "runtime", None)
    if runtime is not None:
        await runtime.stop()
