import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cloudbox.api import billing
from cloudbox.api.deps import object_store
from cloudbox.api.routes import router
from cloudbox.cleaner import start_cleaner
from cloudbox.config import CORS_ORIGINS, ENABLE_CLEANER, validate_billing_config
from cloudbox.core.exceptions import register_exception_handlers
from cloudbox.core.metrics import metrics
from cloudbox.db import engine, init_db

app = FastAPI(title="Cloudbox API", version="1.0.0")

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("cloudbox")

origins = [origin.strip() for origin in CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials="*" not in origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

init_db()

missing_billing = validate_billing_config()
if missing_billing:
    logger.warning("Billing endpoints disabled, missing configuration: %s", ", ".join(missing_billing))

app.include_router(router)
app.include_router(billing.router)
register_exception_handlers(app)

if ENABLE_CLEANER:
    start_cleaner(engine, object_store, metrics, logger)
