import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI, status

from app.dependencies import database
from app.dependencies.database import initialize_db
from app.routers import jobs, normalization, submissions

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Lifespan context for application startup and shutdown."""
    if database.sessionmanager is None:
        logger.warning("Starting without a database; API endpoints will return 512")
        yield
        return

    async with initialize_db(database.sessionmanager):
        yield
    # Shutdown handled by context manager


app = FastAPI(title="Exam Score Normalization Service", lifespan=lifespan)

# Include routers
app.include_router(submissions.router)
app.include_router(normalization.router)
app.include_router(normalization.ranks_router)
app.include_router(jobs.router)


@app.get("/", status_code=status.HTTP_200_OK)
def test() -> dict[str, Any]:
    return {"success": True}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
