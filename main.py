from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any

import anyio
from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.datastructures import UploadFile

from librecov import __version__, db
from librecov.api import admin_router
from librecov.api import router as api_router
from librecov.auth import Principal, auth_router, require_user, setup_auth
from librecov.badges import Badge, svg_response
from librecov.config import ConfigManager, redact_url
from librecov.errors import Forbidden, InvalidPayload, LibrecovError, StorageError
from librecov.ingest import CoverallsUpload, ingest_upload
from librecov.models import Project

logger = logging.getLogger("librecov")

_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")

# ----------------------------
# Upload payload
# ----------------------------


async def read_upload(request: Request) -> CoverallsUpload:
    """Coveralls clients send either a raw JSON body or a form whose
    ``json`` field (text or file part) holds the document."""
    content_type = request.headers.get("content-type", "")
    if not content_type.startswith(_FORM_TYPES):
        return CoverallsUpload.from_json(await request.body())

    form = await request.form()
    field = form.get("json")
    if field is None:
        # coveralls-python names its file part json_file
        field = form.get("json_file")
    if field is None:
        raise InvalidPayload("Missing 'json' form field")
    if isinstance(field, UploadFile):
        return CoverallsUpload.from_json(await field.read())
    return CoverallsUpload.from_json(field)


# ----------------------------
# Lifespan (async startup)
# ----------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg = ConfigManager.load()
    app.state.config = cfg

    if cfg.uses_sqlite():
        await anyio.Path(cfg.server.data_dir).mkdir(parents=True, exist_ok=True)
    url = cfg.database_url()
    logger.info("Using database %s", redact_url(url))
    db.configure(url)
    await db.init_db()

    if cfg.server.first_admin_email:
        await db.promote_first_admin(cfg.server.first_admin_email)

    auth = setup_auth(app, cfg.to_auth_config())
    auth.start(cfg.server.session_sweep_interval)
    try:
        yield
    finally:
        await auth.stop()
        await db.dispose()


# ----------------------------
# App setup
# ----------------------------

app = FastAPI(
    title="librecov",
    description="Self-hosted, Coveralls-compatible code coverage service",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,  # type: ignore[arg-type]  # Starlette typing limitation
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

app.include_router(auth_router)
app.include_router(api_router)
app.include_router(admin_router)


@app.exception_handler(LibrecovError)
async def _librecov_error(request: Request, exc: LibrecovError) -> JSONResponse:
    if exc.status_code >= 500 and exc.__cause__ is not None:
        logger.error(
            "%s %s failed: %s (%r)",
            request.method,
            request.url.path,
            exc.message,
            exc.__cause__,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "code": exc.code},
    )


@app.exception_handler(SQLAlchemyError)
async def _storage_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Database error on %s %s", request.method, request.url.path)
    err = StorageError()
    return JSONResponse(
        status_code=err.status_code,
        content={"error": err.message, "code": err.code},
    )


# ----------------------------
# Routes
# ----------------------------


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/upload/v2")
async def upload_v2(request: Request) -> dict[str, Any]:
    """Coveralls-compatible upload; the payload's repo_token authenticates."""
    upload = await read_upload(request)
    result = await ingest_upload(upload)
    return result.to_response()


@app.post("/api/v1/jobs")
async def create_job(
    request: Request, principal: Principal = Depends(require_user)
) -> dict[str, Any]:
    """Same payload as ``/upload/v2`` for callers that are also logged in
    or hold an API token; they must be able to see the target project."""
    upload = await read_upload(request)

    async def _check(sess: AsyncSession, project: Project) -> None:
        principal.check_project(project.id)
        if await db.visible_project(sess, principal.user, project.id) is None:
            raise Forbidden("Not allowed to upload to this project")

    result = await ingest_upload(upload, check_project=_check)
    return result.to_response()


@app.get("/projects/{project_id}/badge.svg")
async def project_badge(
    project_id: str,
    label: str = "coverage",
    decimals: int = 1,
) -> Response:
    async with db.session() as sess:
        project = await db.project_by_id(sess, project_id)
    if project is None:
        return PlainTextResponse("Project not found", status_code=404)

    badge = Badge.for_coverage(project.coverage_rate, label=label, decimals=decimals)
    # The rate moves with every upload; let caches revalidate via the ETag.
    return svg_response(
        badge,
        cache_control="no-cache",
        etag=badge.etag(project.id, project.updated_ts),
    )


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
