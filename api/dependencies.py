"""
FastAPI dependencies shared by the route modules
"""

from typing import AsyncGenerator, Dict, Optional
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from batch.job import JobController
from batch.jobs import JobFactory
from core.config import Settings


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Dependency for FastAPI to get a database session"""
    async with request.app.state.session_factory() as session:
        yield session


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_controller(request: Request) -> JobController:
    return request.app.state.controller


def get_job_factories(request: Request) -> Dict[str, JobFactory]:
    return request.app.state.job_factories


async def verify_api_key(
    x_api_key: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings)
) -> None:
    """Require X-API-Key when an API key is configured"""
    expected = settings.API_KEY
    if expected and x_api_key != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key"
        )
