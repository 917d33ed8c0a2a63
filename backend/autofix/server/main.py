import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from autofix import config
from autofix.server import backend
from autofix.server.auth import configured_api_key
from autofix.server.routers import realtime, rest, storage

logging.basicConfig(level=getattr(logging, config.LOG_LEVEL, logging.INFO))

app = FastAPI(title="AutoFix Remote Data Service", version="0.1.0")

cors_origins = config.parse_csv_env("CORS_ORIGINS", "*")
allow_any_origin = len(cors_origins) == 1 and cors_origins[0] == "*"

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    # Browsers reject wildcard CORS with credentials enabled.
    allow_credentials=not allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
)

trusted_hosts = config.parse_csv_env("TRUSTED_HOSTS", "*")
if not (len(trusted_hosts) == 1 and trusted_hosts[0] == "*"):
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

app.include_router(rest.router)
app.include_router(realtime.router)
app.include_router(storage.router)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    return {
        "status": "ready",
        "realtime_subscribers": backend.change_hub.subscriber_count(),
        "api_key_required": bool(configured_api_key()),
    }
