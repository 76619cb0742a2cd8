import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pymongo.errors import PyMongoError

import admin_routes
import auth_routes
import student_routes
import tracking_routes
from config import (
    CORS_ORIGINS, DATABASE_NAME, DATABASE_URL, ENVIRONMENT, PORT, configure_logging, validate_config,
)
from database import TRACKING_EVENTS, USERS, db, ensure_indexes
from errors import register_exception_handlers

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    validate_config()
    if db is not None:
        ensure_indexes(db)
    else:
        logger.warning("DATABASE_URL not set, running without a database")
    yield


app = FastAPI(title="SchoolWay API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(auth_routes.router)
app.include_router(student_routes.router)
app.include_router(tracking_routes.router)
app.include_router(admin_routes.router)


# ----------------------- Health -----------------------
@app.get("/")
def read_root():
    return {"success": True, "message": "SchoolWay API running"}


@app.get("/health")
def health():
    return {"success": True, "data": {"ok": True, "time": datetime.now(timezone.utc).isoformat()}}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if DATABASE_URL else "❌ Not Set",
        "database_name": DATABASE_NAME,
        "environment": ENVIRONMENT,
        "counts": {},
    }
    if db is None:
        return response
    try:
        response["counts"] = {
            USERS: db[USERS].estimated_document_count(),
            TRACKING_EVENTS: db[TRACKING_EVENTS].estimated_document_count(),
        }
        response["database"] = "✅ Connected & Working"
    except PyMongoError as e:
        logger.warning("Database probe failed: %s", e)
        response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
