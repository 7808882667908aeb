# aac_practice/main.py
import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse

from .config import get_settings
from .core.logging import setup_logging
from .database import create_tables
from .dependencies import build_services
from .hash_password import create_or_update_admin
from .routers import appointments, auth, claims, emergency, health, logs, patients, webhooks

settings = get_settings()

# --- Logging Configuration ---
setup_logging(level=settings.log_level, json_logs=settings.log_json)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug)

# Services are built once and shared through request.app.state
app.state.services = build_services(settings)

@app.on_event("startup")
def on_startup():
    create_tables()
    create_or_update_admin(settings)
    logger.info(f"{settings.app_name} started in {settings.environment} mode")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "HEAD"],
    allow_headers=["*"],
)

app.include_router(auth.router, prefix="/api/v1")
app.include_router(patients.router, prefix="/api/v1")
app.include_router(appointments.router, prefix="/api/v1")
app.include_router(claims.router, prefix="/api/v1")
app.include_router(emergency.router, prefix="/api/v1")
app.include_router(logs.router, prefix="/api/v1")
app.include_router(health.router, prefix="/api/v1")
app.include_router(webhooks.router, prefix="/api/v1")


@app.post("/token", include_in_schema=False)
async def token_redirect():
    return RedirectResponse(url="/api/v1/auth/token", status_code=307)


if __name__ == "__main__":
    uvicorn.run("aac_practice.main:app", host="0.0.0.0", port=8000, reload=settings.is_development)
