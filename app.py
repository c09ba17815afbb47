from contextlib import asynccontextmanager
from typing import List, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from config import get_settings
from errors import (
    ParentNotFound,
    PartialFanoutFailure,
    ReferralConflict,
    ReferralNotFound,
    StoreUnavailable,
)
from logging_config import configure_logging
from models import BatchResult, ReadOptions, ReferralNode
from referral_db import PostgresDocumentStore
from referral_engine import ReferralTree

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    yield


app = FastAPI(title="Referral Tree", version="0.1.0", lifespan=lifespan)


def get_referral_tree() -> ReferralTree:
    """engine over postgres, built from settings. tests override this dependency."""
    settings = get_settings()
    return ReferralTree(
        PostgresDocumentStore(settings.database_dsn),
        collection=settings.collection,
        max_levels=settings.max_levels,
    )


# ---------
# pydantic models (requests)
# ---------

class ReferralCreateRequest(BaseModel):
    id: str = Field(..., min_length=1, description="Unique referral identifier")
    payload: str = Field("", description="Opaque payload stored with the referral")
    parent_id: Optional[str] = Field(None, description="Referrer's identifier, if any")


class ReferralPayloadRequest(BaseModel):
    payload: str = Field(..., description="New payload")


# ---------
# helpers
# ---------

def _raise_http(e: Exception):
    """map engine errors onto HTTP errors."""
    if isinstance(e, ReferralConflict):
        raise HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (ParentNotFound, ReferralNotFound)):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PartialFanoutFailure):
        # what went through stays applied; tell the caller exactly what did not
        raise HTTPException(
            status_code=502,
            detail={"message": str(e), "result": e.result.model_dump()},
        )
    if isinstance(e, StoreUnavailable):
        raise HTTPException(status_code=503, detail="Document store unavailable")
    if isinstance(e, ValueError):
        raise HTTPException(status_code=400, detail=str(e))
    logger.exception("referral_api_error")
    raise HTTPException(status_code=500, detail="Internal server error")


# ---------
# endpoints
# ---------


@app.post("/api/referrals", status_code=201, response_model=ReferralNode)
async def referral_create(
    body: ReferralCreateRequest,
    tree: ReferralTree = Depends(get_referral_tree),
):
    """create a referral, optionally under a parent."""
    try:
        return await tree.create_referral(body.id, body.payload, body.parent_id)
    except Exception as e:
        _raise_http(e)


@app.get("/api/referrals/{referral_id}", response_model=ReferralNode)
async def referral_get(
    referral_id: str,
    fields: Optional[List[str]] = Query(None, description="Only return these fields"),
    tree: ReferralTree = Depends(get_referral_tree),
):
    try:
        options = ReadOptions(fields=tuple(fields) if fields else None)
        node = await tree.get_referral(referral_id, options)
    except Exception as e:
        _raise_http(e)

    if node is None:
        raise HTTPException(status_code=404, detail=f"Referral {referral_id} not found.")
    return node


@app.get("/api/referrals/{referral_id}/network")
async def referral_network(
    referral_id: str,
    tree: ReferralTree = Depends(get_referral_tree),
):
    """
    descendants per level, read from the referral's own denormalized copies.

    response:
    {
      "id": "r",
      "levels": [
        {"level": 1, "referrals": [{"id": ..., "payload": ...}, ...]},
        ...
      ]
    }
    """
    try:
        levels = await tree.get_network(referral_id)
    except Exception as e:
        _raise_http(e)

    if levels is None:
        raise HTTPException(status_code=404, detail=f"Referral {referral_id} not found.")
    return {
        "id": referral_id,
        "levels": [
            {"level": i, "referrals": [d.model_dump() for d in descendants]}
            for i, descendants in enumerate(levels, start=1)
        ],
    }


@app.patch("/api/referrals/{referral_id}", response_model=BatchResult)
async def referral_update_payload(
    referral_id: str,
    body: ReferralPayloadRequest,
    tree: ReferralTree = Depends(get_referral_tree),
):
    try:
        return await tree.update_referral_payload(referral_id, body.payload)
    except Exception as e:
        _raise_http(e)


@app.delete("/api/referrals/{referral_id}", response_model=BatchResult)
async def referral_remove(
    referral_id: str,
    tree: ReferralTree = Depends(get_referral_tree),
):
    try:
        return await tree.remove_referral(referral_id)
    except Exception as e:
        _raise_http(e)
