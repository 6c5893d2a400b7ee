"""Thin async httpx wrapper for the read-only parts of the Orthanc REST API."""
from typing import Any, Optional

import httpx

from ..config import settings


def _make_client(timeout: Optional[float] = None) -> httpx.AsyncClient:
    auth = None
    if settings.orthanc_user:
        auth = (settings.orthanc_user, settings.orthanc_pass)
    return httpx.AsyncClient(base_url=settings.orthanc_url, auth=auth, timeout=timeout or 30.0)


async def get(path: str, timeout: Optional[float] = None) -> Any:
    async with _make_client(timeout) as client:
        r = await client.get(path)
        r.raise_for_status()
        return r.json()


async def get_study(orthanc_study_id: str) -> dict:
    return await get(f"/studies/{orthanc_study_id}", timeout=settings.orthanc_timeout_study)


async def list_study_instances(orthanc_study_id: str) -> list:
    return await get(f"/studies/{orthanc_study_id}/instances", timeout=settings.orthanc_timeout_instances)


async def get_series(orthanc_series_id: str, timeout: Optional[float] = None) -> dict:
    return await get(f"/series/{orthanc_series_id}", timeout=timeout or settings.orthanc_timeout_series)


async def get_instance(orthanc_instance_id: str, timeout: Optional[float] = None) -> dict:
    return await get(f"/instances/{orthanc_instance_id}", timeout=timeout or settings.orthanc_timeout_probe)


async def get_simplified_tags(orthanc_instance_id: str) -> dict:
    return await get(f"/instances/{orthanc_instance_id}/simplified-tags", timeout=settings.orthanc_timeout_tags)


async def get_system() -> dict:
    return await get("/system", timeout=settings.orthanc_timeout_system)
