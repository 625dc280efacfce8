import logging

from fastapi import FastAPI

from vm_lifecycle.api import get_service, install_error_handlers, router
from vm_lifecycle.db import init_db
from vm_lifecycle.logging_config import configure_logging


logger = logging.getLogger(__name__)


app = FastAPI(title="VM Lifecycle")
app.include_router(router)
install_error_handlers(app)


@app.on_event("startup")
def startup() -> None:
    configure_logging()
    init_db()
    logger.info("vm-lifecycle startup complete")


@app.on_event("shutdown")
def shutdown() -> None:
    # Only a service that was actually built has background work to drain.
    if get_service.cache_info().currsize:
        remaining = get_service().close()
        if remaining:
            logger.warning("%d operations abandoned at shutdown", remaining)
