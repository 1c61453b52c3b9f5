import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from blueprint.config import settings
from blueprint.deps import init_db
from blueprint.errors import PipelineError
from blueprint.routers import sessions, plans, export, jobs, admin
from blueprint.services import kb_store

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    kb_store.get()
    yield

app = FastAPI(title="Blueprint Engine", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)

@app.get("/healthz")
def healthz():
    return {"status": "ok"}

app.include_router(sessions.router, prefix="/sessions", tags=["sessions"])
app.include_router(plans.router, prefix="/plans", tags=["plans"])
app.include_router(export.router, prefix="/export", tags=["export"])
app.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
app.include_router(admin.router, prefix="/admin", tags=["admin"])
