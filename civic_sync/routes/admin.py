"""
Operator endpoints.

- GET/PUT /admin/pause: the global pause switch checked at every job start
- POST /admin/members/{member_id}/clear-fec-match: drop a cached FEC match
  so the next finance sync re-scores the member
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from civic_sync.lib.base_sync import SyncDependencies
from civic_sync.routes.sync import get_sync_dependencies

logger = logging.getLogger(__name__)

router = APIRouter()

FEC_MATCH_FIELDS = ("fec_candidate_id", "fec_match_score", "fec_committee_ids")


class PauseState(BaseModel):
    paused: bool


@router.get("/pause", response_model=PauseState)
async def get_pause(deps: SyncDependencies = Depends(get_sync_dependencies)):
    return PauseState(paused=deps.pause_flag.is_paused())


@router.put("/pause", response_model=PauseState)
async def set_pause(
    body: PauseState, deps: SyncDependencies = Depends(get_sync_dependencies)
):
    """Pause or resume all syncs. Running invocations finish normally."""
    deps.pause_flag.set_paused(body.paused)
    logger.warning(f"Syncs {'paused' if body.paused else 'resumed'} by operator")
    return PauseState(paused=deps.pause_flag.is_paused())


@router.post("/members/{member_id}/clear-fec-match")
async def clear_fec_match(
    member_id: str, deps: SyncDependencies = Depends(get_sync_dependencies)
):
    """Forget a member's cached FEC candidate and committees."""
    if not deps.data.select("members", match={"id": member_id}, columns="id"):
        raise HTTPException(status_code=404, detail=f"Member {member_id} not found")

    deps.data.update("members", {f: None for f in FEC_MATCH_FIELDS}, {"id": member_id})
    logger.info(f"Cleared FEC match for member {member_id}")
    return {"member_id": member_id, "cleared": list(FEC_MATCH_FIELDS)}
