import logging

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from db.session import engine
from db.base import Base

from models import criteria as criteria_models  # noqa: F401
from models import tenders as tender_models  # noqa: F401
from models import uploads as upload_models  # noqa: F401
from authentication import models as auth_models  # noqa: F401
from authentication.router import router as auth_router
from routers.criteria import router as criteria_router
from routers.tenders import router as tenders_router
from routers.uploads import router as uploads_router
from services.ingestion_queue import get_queue_status, start_workers, stop_workers

# --------------------------------------------------
# LOGGING
# --------------------------------------------------
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# --------------------------------------------------
# APP
# --------------------------------------------------
app = FastAPI(
    title="Tender Intake API",
    version="1.0.0",
    swagger_ui_parameters={
        "persistAuthorization": True,
        "displayRequestDuration": True,
    },
)


# --------------------------------------------------
# DB INIT + WORKERS
# --------------------------------------------------
@app.on_event("startup")
def _startup():
    try:
        Base.metadata.create_all(bind=engine)
    except Exception:
        logger.exception("DB init failed")
    start_workers()


@app.on_event("shutdown")
def _shutdown():
    stop_workers()


# --------------------------------------------------
# CORS
# --------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --------------------------------------------------
# CORS PREFLIGHT (EXPLICIT)
# --------------------------------------------------
@app.options("/{path:path}")
def preflight(path: str, request: Request):
    return Response(status_code=204)


# --------------------------------------------------
# ROUTERS
# --------------------------------------------------
app.include_router(auth_router)
app.include_router(uploads_router)
app.include_router(tenders_router)
app.include_router(criteria_router)


# --------------------------------------------------
# HEALTH CHECK
# --------------------------------------------------
@app.get("/health")
def health():
    database = "ok"
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("Health check database probe failed: %s", exc)
        database = "unavailable"
    return {"status": "ok", "database": database, "queue": get_queue_status()}


@app.get("/")
def root():
    return {"status": "ok"}
