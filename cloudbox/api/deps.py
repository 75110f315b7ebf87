from __future__ import annotations

import logging

from fastapi import Depends, Request

from cloudbox.config import (
    AUTH_PROVIDER_PROJECT,
    AUTH_PROVIDER_URL,
    CUSTOM_SESSION_PREFIX,
    EXTERNAL_CALL_TIMEOUT_SECONDS,
    MAX_FILE_SIZE,
    REDIS_URL,
    SESSION_COOKIE_NAME,
    STORAGE_DIR,
    STRIPE_API_BASE,
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
    STRIPE_WEBHOOK_TOLERANCE_SECONDS,
    USER_DATA_COOKIE_NAME,
    USER_LOCK_TIMEOUT_SECONDS,
    load_plan_price_table,
    validate_billing_config,
)
from cloudbox.core.exceptions import BillingNotConfigured
from cloudbox.core.locks import UserLockRegistry
from cloudbox.core.metrics import metrics
from cloudbox.db import engine
from cloudbox.metadata import SqlMetadataStore
from cloudbox.services.billing import StripeBillingClient
from cloudbox.services.files import FileManager
from cloudbox.services.ingestion import IngestionPipeline
from cloudbox.services.reconciler import SubscriptionReconciler
from cloudbox.services.retrieval import RetrievalProxy
from cloudbox.services.sessions import AuthenticatedPrincipal, ProviderAuthClient, parse_session, resolve_principal
from cloudbox.storage import LocalObjectStore

logger = logging.getLogger("cloudbox")

object_store = LocalObjectStore(STORAGE_DIR)
metadata_store = SqlMetadataStore(engine)
user_locks = UserLockRegistry(REDIS_URL, USER_LOCK_TIMEOUT_SECONDS)
plan_prices = load_plan_price_table()

auth_client = ProviderAuthClient(AUTH_PROVIDER_URL, AUTH_PROVIDER_PROJECT, EXTERNAL_CALL_TIMEOUT_SECONDS)
billing_client = StripeBillingClient(
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
    plan_prices,
    api_base=STRIPE_API_BASE,
    timeout=EXTERNAL_CALL_TIMEOUT_SECONDS,
    webhook_tolerance_seconds=STRIPE_WEBHOOK_TOLERANCE_SECONDS,
)

ingestion_pipeline = IngestionPipeline(object_store, metadata_store, max_file_size=MAX_FILE_SIZE, metrics=metrics)
retrieval_proxy = RetrievalProxy(object_store, metadata_store, metrics)
file_manager = FileManager(object_store, metadata_store, max_file_size=MAX_FILE_SIZE, metrics=metrics)
reconciler = SubscriptionReconciler(metadata_store, plan_prices, user_locks, metrics)


def get_metadata_store() -> SqlMetadataStore:
    return metadata_store


def get_ingestion_pipeline() -> IngestionPipeline:
    return ingestion_pipeline


def get_retrieval_proxy() -> RetrievalProxy:
    return retrieval_proxy


def get_file_manager() -> FileManager:
    return file_manager


def get_reconciler() -> SubscriptionReconciler:
    return reconciler


def get_auth_client() -> ProviderAuthClient:
    return auth_client


def get_principal(request: Request, client: ProviderAuthClient = Depends(get_auth_client)) -> AuthenticatedPrincipal:
    """Resolve the session cookie once per request into the acting user."""
    session = parse_session(
        request.cookies,
        session_cookie=SESSION_COOKIE_NAME,
        user_data_cookie=USER_DATA_COOKIE_NAME,
        custom_prefix=CUSTOM_SESSION_PREFIX,
    )
    return resolve_principal(session, client)


def get_billing_client() -> StripeBillingClient:
    missing = validate_billing_config()
    if missing:
        logger.error("event=billing_not_configured missing=%s", ",".join(missing))
        raise BillingNotConfigured()
    return billing_client
