"""
FastAPI dependencies
"""

from typing import AsyncIterator
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession
from core.database import async_session_maker
from ingestion.runtime import Pipeline, build_pipeline


async def get_db() -> AsyncIterator[AsyncSession]:
    """Request-scoped database session"""
    async with async_session_maker() as session:
        yield session


def get_pipeline(request: Request) -> Pipeline:
    """Pipeline components built at startup (or lazily on first use)"""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        pipeline = build_pipeline(async_session_maker)
        request.app.state.pipeline = pipeline
    return pipeline
