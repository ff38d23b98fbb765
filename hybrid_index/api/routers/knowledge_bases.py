from __future__ import annotations
import asyncio
from typing import Any, Dict, List
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi import status as http

from hybrid_index.core.errors import EmbeddingError, KnowledgeBaseNotFound
from hybrid_index.models.document import SearchHit
from hybrid_index.models.knowledge_base import IndexFileRequest, SearchRequest
from hybrid_index.services.knowledge_base_service import KnowledgeBaseService
from hybrid_index.temporal_workflows.client import TemporalMaintenanceClient
from hybrid_index.temporal_workflows.maintenance_workflow import MaintenanceRequest

router = APIRouter()
temporal_client = TemporalMaintenanceClient()


def get_service(request: Request) -> KnowledgeBaseService:
    return request.app.state.knowledge_bases


def _not_found(kb_id: str) -> HTTPException:
    return HTTPException(http.HTTP_404_NOT_FOUND, detail=f"Knowledge base not found: {kb_id}")


@router.get("", response_model=List[str])
def list_knowledge_bases(svc: KnowledgeBaseService = Depends(get_service)):
    return svc.list_knowledge_bases()


@router.post("/{kb_id}/files/{file_id}", status_code=http.HTTP_201_CREATED)
def index_file(kb_id: str, file_id: str, body: IndexFileRequest, svc: KnowledgeBaseService = Depends(get_service)):
    if not body.chunks:
        raise HTTPException(http.HTTP_400_BAD_REQUEST, detail="chunks must not be empty")
    try:
        indexed = svc.index_file(kb_id, file_id, body.file_name, body.chunks)
    except (ValueError, EmbeddingError) as e:
        raise HTTPException(http.HTTP_400_BAD_REQUEST, detail=str(e))
    return {"fileId": file_id, "indexed": indexed, "skipped": len(body.chunks) - indexed}


@router.delete("/{kb_id}/files/{file_id}")
def mark_file_deleted(kb_id: str, file_id: str, svc: KnowledgeBaseService = Depends(get_service)):
    try:
        return {"fileId": file_id, "deleted": svc.mark_file_deleted(kb_id, file_id)}
    except KnowledgeBaseNotFound:
        raise _not_found(kb_id)


@router.post("/{kb_id}/files/{file_id}/restore")
def restore_file(kb_id: str, file_id: str, svc: KnowledgeBaseService = Depends(get_service)):
    try:
        return {"fileId": file_id, "restored": svc.restore_file(kb_id, file_id)}
    except KnowledgeBaseNotFound:
        raise _not_found(kb_id)


@router.delete("/{kb_id}/files/{file_id}/purge")
def purge_file(kb_id: str, file_id: str, svc: KnowledgeBaseService = Depends(get_service)):
    try:
        return {"fileId": file_id, "removed": svc.purge_file(kb_id, file_id)}
    except KnowledgeBaseNotFound:
        raise _not_found(kb_id)


async def _run_durable(svc: KnowledgeBaseService, request: MaintenanceRequest) -> Dict[str, Any]:
    result = await temporal_client.run_maintenance(request)
    # the worker saved its own copy; reload ours from the snapshot on next access
    svc.evict(request.kb_id)
    return {**result, "durable_execution": True}


@router.post("/{kb_id}/purge")
async def purge_deleted(
    kb_id: str,
    use_temporal: bool = Query(False, description="Run via Temporal for durable execution"),
    svc: KnowledgeBaseService = Depends(get_service),
):
    if not svc.exists(kb_id):
        raise _not_found(kb_id)
    if use_temporal:
        return await _run_durable(svc, MaintenanceRequest(kb_id=kb_id, action="purge"))
    purged = await asyncio.to_thread(svc.purge_deleted, kb_id)
    return {"purged": purged, "durable_execution": False}


@router.post("/{kb_id}/rebuild")
async def rebuild(
    kb_id: str,
    force_tune: bool = Query(False, description="Re-run elbow tuning for K before rebuilding"),
    use_temporal: bool = Query(False, description="Run via Temporal for durable execution"),
    svc: KnowledgeBaseService = Depends(get_service),
):
    """
    Rebuild the LSH and cluster indices of a knowledge base.

    Query params:
    - force_tune: re-tune K with the elbow method even if a tuned value exists
    - use_temporal: If true, execute via Temporal workflow (durable execution)
    """
    if not svc.exists(kb_id):
        raise _not_found(kb_id)
    if use_temporal:
        return await _run_durable(svc, MaintenanceRequest(kb_id=kb_id, action="rebuild", force_tune=force_tune))
    # CPU-bound index work runs off the event loop
    ok = await asyncio.to_thread(svc.rebuild_index, kb_id, force_tune)
    if not ok:
        raise HTTPException(http.HTTP_500_INTERNAL_SERVER_ERROR, detail="Index rebuild failed; previous indices kept")
    return {"rebuilt": True, "stats": svc.get_stats(kb_id), "durable_execution": False}


@router.post("/{kb_id}/tune")
async def tune(
    kb_id: str,
    use_temporal: bool = Query(False, description="Run via Temporal for durable execution"),
    svc: KnowledgeBaseService = Depends(get_service),
):
    if not svc.exists(kb_id):
        raise _not_found(kb_id)
    if use_temporal:
        return await _run_durable(svc, MaintenanceRequest(kb_id=kb_id, action="tune"))
    result = await asyncio.to_thread(svc.tune, kb_id)
    return {**result, "durable_execution": False}


@router.post("/{kb_id}/search", response_model=Dict[str, Any])
def search(kb_id: str, body: SearchRequest, svc: KnowledgeBaseService = Depends(get_service)):
    """
    Request JSON:
    {
      "query_text": "string" | null,
      "query_embedding": [float, ...] | null,
      "k": 5
    }
    """
    try:
        hits: List[SearchHit] = svc.search(
            kb_id, query_text=body.query_text, query_embedding=body.query_embedding, k=body.k
        )
    except KnowledgeBaseNotFound:
        raise _not_found(kb_id)
    except (ValueError, EmbeddingError) as e:
        raise HTTPException(http.HTTP_400_BAD_REQUEST, detail=str(e))
    return {
        "hits": [{"document": h.document.to_dict(), "similarity": h.similarity} for h in hits],
        "k": body.k,
    }


@router.get("/{kb_id}/stats")
def get_stats(kb_id: str, svc: KnowledgeBaseService = Depends(get_service)):
    try:
        return svc.get_stats(kb_id)
    except KnowledgeBaseNotFound:
        raise _not_found(kb_id)


@router.delete("/{kb_id}", status_code=http.HTTP_204_NO_CONTENT)
def delete_knowledge_base(kb_id: str, svc: KnowledgeBaseService = Depends(get_service)):
    if not svc.delete_knowledge_base(kb_id):
        raise _not_found(kb_id)
    return None
