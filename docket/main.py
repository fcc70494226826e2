from contextlib import asynccontextmanager

from fastapi import FastAPI

from docket.errors import register_error_handlers
from docket.logging import configure_logging
from docket.services.repository import LedgerRepository


def create_app(repository: LedgerRepository | None = None) -> FastAPI:
    """Composition root for the HTTP layer.

    Routers are mounted by the caller; they reach the facade through
    ``request.app.state.repository`` and surface failures with
    ``Result.unwrap()``.
    """
    repository = repository or LedgerRepository()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        repository.seed_catalog().unwrap()
        yield

    configure_logging()
    app = FastAPI(title="Docket Ledger", lifespan=lifespan)
    app.state.repository = repository
    register_error_handlers(app)
    return app
