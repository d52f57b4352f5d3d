"""
FastAPI application for the catering invoice editor.
"""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from src.shared.logging_config import configure_logging

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown events."""
    from src.web.dependencies import get_invoice_repository
    repo = get_invoice_repository()
    log.info("Invoice database ready at %s", repo.db_path)
    yield


app = FastAPI(title="Catering Invoice Editor", version="0.1.0", lifespan=lifespan)

# Import and include routers
from src.web.routers import invoices  # noqa: E402

app.include_router(invoices.router)


@app.get("/")
async def index():
    return RedirectResponse(url="/api/invoices")


def main():
    configure_logging()
    uvicorn.run(
        "src.web.app:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
    )


if __name__ == "__main__":
    main()
