"""
HTTP endpoints for health, manual cycles and browsing saved records.
"""

import logging
from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from dwag_relay.domain.errors import StorageUnavailable
from dwag_relay.domain.models import RecordResponse, TagCount, User
from dwag_relay.usecases.pipeline import PipelineCoordinator
from dwag_relay.usecases.tag_record_store import TagRecordStore

logger = logging.getLogger(__name__)
router = APIRouter()


def get_store(request: Request) -> TagRecordStore:
    return request.app.state.store


def get_coordinator(request: Request) -> PipelineCoordinator:
    return request.app.state.coordinator


async def _require_user(store: TagRecordStore, username: str) -> User:
    try:
        user = await store.get_user(username)
    except StorageUnavailable as e:
        logger.error(f"Storage unavailable looking up {username}: {e}")
        raise HTTPException(status_code=503, detail="Storage unavailable")
    if user is None:
        raise HTTPException(status_code=404, detail=f"Unknown user: {username}")
    return user


@router.get("/health")
async def health_check(coordinator: PipelineCoordinator = Depends(get_coordinator)):
    """Health check endpoint."""
    report = coordinator.last_report
    return {
        "status": "healthy",
        "service": "dwag-relay",
        "pipeline_state": coordinator.state.value,
        "last_cycle": asdict(report) if report else None,
    }


@router.post("/cycle/run")
async def run_cycle(coordinator: PipelineCoordinator = Depends(get_coordinator)):
    """Run one polling cycle now and return its report."""
    report = await coordinator.run_cycle()
    return asdict(report)


@router.get("/users/{username}/tags", response_model=List[TagCount])
async def list_tags(username: str, store: TagRecordStore = Depends(get_store)):
    """Tags of a user with their live record counts."""
    user = await _require_user(store, username)
    try:
        return await store.list_tags_with_counts(user.id)
    except StorageUnavailable:
        raise HTTPException(status_code=503, detail="Storage unavailable")


@router.delete("/users/{username}/tags/{tag_id}")
async def delete_tag(username: str, tag_id: int, store: TagRecordStore = Depends(get_store)):
    """Delete a tag; its records move to untagged."""
    user = await _require_user(store, username)
    try:
        deleted = await store.delete_tag(user.id, tag_id)
    except StorageUnavailable:
        raise HTTPException(status_code=503, detail="Storage unavailable")

    if not deleted:
        raise HTTPException(status_code=404, detail=f"Tag {tag_id} not found or not deletable")
    return {"deleted": True, "tag_id": tag_id}


@router.get("/users/{username}/records", response_model=List[RecordResponse])
async def list_records(
    username: str,
    tag: Optional[str] = None,
    q: Optional[str] = None,
    limit: int = Query(10, ge=1, le=100),
    store: TagRecordStore = Depends(get_store)
):
    """
    Live records of a user.

    Filters by tag, or searches idea text with q; otherwise the most recent.
    """
    user = await _require_user(store, username)
    try:
        if tag:
            records = await store.list_by_tag(user.id, tag)
        elif q is not None:
            records = await store.search_records(user.id, q)
        else:
            records = await store.list_recent(user.id, limit=limit)
    except StorageUnavailable:
        raise HTTPException(status_code=503, detail="Storage unavailable")

    return [RecordResponse.from_record(record) for record in records[:limit]]


@router.get("/users/{username}/records/{record_id}", response_model=RecordResponse)
async def get_record(username: str, record_id: int, store: TagRecordStore = Depends(get_store)):
    """One live record."""
    user = await _require_user(store, username)
    try:
        record = await store.get_record(user.id, record_id)
    except StorageUnavailable:
        raise HTTPException(status_code=503, detail="Storage unavailable")

    if record is None:
        raise HTTPException(status_code=404, detail=f"Record {record_id} not found")
    return RecordResponse.from_record(record)
