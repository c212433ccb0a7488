"""
Gradebook — grade analytics and cohort ranking service.
FastAPI backend entry point.
"""

import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Load environment before route modules read their settings
load_dotenv()

from gradebook.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError  # noqa: E402
from routes.analytics import router as analytics_router  # noqa: E402
from routes.deps import MOVING_AVERAGE_WINDOW, PASS_MARK, SCHOOL_NAME  # noqa: E402
from routes.grades import router as grades_router  # noqa: E402
from routes.rankings import router as rankings_router  # noqa: E402

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Comma-separated allowed origins, e.g. http://localhost:5173,https://app.example.com
raw_origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000")
ALLOWED_ORIGINS = [o.strip() for o in raw_origins.split(",") if o.strip()]

app = FastAPI(
    title="Gradebook API",
    description="Grade analytics, pass thresholds and cohort rankings for schools.",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Engine errors → HTTP ────────────────────────────────────────────

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"error": exc.message, "issues": exc.issues})


@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError):
    logger.info("Forbidden %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=403, content={"error": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    return JSONResponse(status_code=409, content={"error": str(exc)})


# Register route modules
SCHOOL_PREFIX = "/api/schools/{school_id}"
app.include_router(grades_router, prefix=f"{SCHOOL_PREFIX}/grades", tags=["Grades"])
app.include_router(rankings_router, prefix=SCHOOL_PREFIX, tags=["Rankings"])
app.include_router(analytics_router, prefix=SCHOOL_PREFIX, tags=["Analytics"])


@app.get("/api/health")
async def health_check():
    return {
        "status": "ok",
        "school_name": SCHOOL_NAME,
        "pass_mark": PASS_MARK,
    }


@app.get("/api/config")
async def get_config():
    """Return server configuration to the frontend."""
    return {
        "school_name": SCHOOL_NAME,
        "pass_mark": PASS_MARK,
        "moving_average_window": MOVING_AVERAGE_WINDOW,
    }
