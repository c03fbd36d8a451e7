import logging

from fastapi import FastAPI

from vm_reconciler.api import get_reconciler, router
from vm_reconciler.config import get_settings
from vm_reconciler.logging_config import configure_logging


logger = logging.getLogger(__name__)

app = FastAPI(title="PVE VM Reconciler")
app.include_router(router)


@app.on_event("startup")
def startup() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info(
        "reconciler startup complete endpoint=%s verify_tls=%s poll_interval_sec=%s",
        settings.endpoint,
        settings.verify_tls,
        settings.poll_interval_sec,
    )


@app.on_event("shutdown")
def shutdown() -> None:
    if get_reconciler.cache_info().currsize:
        get_reconciler().cluster.close()
