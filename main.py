import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session

import config
from db import create_db_and_tables, engine
from errors import register_error_handlers
from routers import admin, allocations, auth, requests, resources, users

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
log = logging.getLogger("resourcehub")

app = FastAPI(title="ResourceHub", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)


@app.on_event("startup")
def on_startup() -> None:
    log.info("Creating database tables...")
    create_db_and_tables()
    if config.ADMIN_EMAIL and config.ADMIN_PASSWORD:
        with Session(engine) as session:
            auth.ensure_admin(session, config.ADMIN_EMAIL, config.ADMIN_PASSWORD)
    log.info("ResourceHub ready")


@app.get("/api/health", tags=["health"])
def health():
    return {"success": True, "status": "ok"}


app.include_router(auth.router, prefix="/api/auth")
app.include_router(resources.router, prefix="/api/resources")
app.include_router(resources.categories_router, prefix="/api/categories")
app.include_router(requests.router, prefix="/api/requests")
app.include_router(allocations.router, prefix="/api/allocations")
app.include_router(users.router, prefix="/api/admin/users")
app.include_router(admin.router, prefix="/api/admin")
app.include_router(admin.dashboard_router, prefix="/api/dashboard")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=config.DEBUG)
