from __future__ import annotations


import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from devicehub.api.v1 import audit, auth, devices, permissions, roles, users
from devicehub.core.config import settings
from devicehub.core.errors import DeviceHubError
from devicehub.core.logging import configure_logging
from devicehub.db.session import get_session, init_db
from devicehub.services import AuthContainer, ensure_seed_data

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db()
    with get_session() as session:
        ensure_seed_data(session)
    container = AuthContainer()
    app.state.auth = container
    container.start()
    logger.info("%s started", settings.project_name)

    yield

    await container.shutdown()
    logger.info("%s stopped", settings.project_name)


app = FastAPI(title=settings.project_name, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DeviceHubError)
async def devicehub_exception_handler(request: Request, exc: DeviceHubError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.get("/healthz", tags=["system"])
def health() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(auth.router, prefix="/api/v1")
app.include_router(permissions.router, prefix="/api/v1")
app.include_router(roles.router, prefix="/api/v1")
app.include_router(users.router, prefix="/api/v1")
app.include_router(devices.router, prefix="/api/v1")
app.include_router(audit.router, prefix="/api/v1")
