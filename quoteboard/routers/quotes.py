"""
Quote board endpoints
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, File, UploadFile

from quoteboard.attachments import attach_to_quote
from quoteboard.auth import get_current_user
from quoteboard.db.models import User
from quoteboard.deps import get_store
from quoteboard.errors import ValidationError
from quoteboard.pipeline import PipelineStore
from quoteboard.schemas import (
    PositionsRequest,
    QuoteCreate,
    QuoteRead,
    QuoteUpdate,
    StageChange,
    StageOrderRequest,
)

router = APIRouter(
    prefix="/quotes",
    tags=["quotes"],
    dependencies=[Depends(get_current_user)],
)


@router.get("", response_model=List[QuoteRead])
async def list_quotes(store: PipelineStore = Depends(get_store)):
    """Whole board in display order"""
    return await store.list_all()


@router.post("", response_model=QuoteRead, status_code=201)
async def create_quote(
    body: QuoteCreate,
    store: PipelineStore = Depends(get_store),
    current_user: User = Depends(get_current_user),
):
    return await store.create(body, created_by=current_user.id)


# Fixed paths before /{quote_id}


@router.patch("/positions", response_model=List[QuoteRead])
async def update_positions(body: PositionsRequest, store: PipelineStore = Depends(get_store)):
    """Bulk drag-and-drop write: caller-computed positions, one transaction"""
    if not body.updates:
        raise ValidationError("Updates array is required")
    return await store.reorder(body.updates)


@router.patch("/order", response_model=List[QuoteRead])
async def update_order(body: StageOrderRequest, store: PipelineStore = Depends(get_store)):
    """Drag-and-drop write from the final id order per column"""
    return await store.resequence(body.stages)


@router.put("/{quote_id}", response_model=QuoteRead)
async def update_quote(
    quote_id: str,
    body: QuoteUpdate,
    store: PipelineStore = Depends(get_store),
):
    return await store.update_fields(quote_id, body)


@router.patch("/{quote_id}/stage", response_model=QuoteRead)
async def change_stage(
    quote_id: str,
    body: StageChange,
    store: PipelineStore = Depends(get_store),
):
    return await store.move(quote_id, body.stage, body.position)


@router.post("/{quote_id}/attachment", response_model=QuoteRead)
async def upload_attachment(
    quote_id: str,
    file: Optional[UploadFile] = File(None),
    store: PipelineStore = Depends(get_store),
):
    """Attach a PDF to the quote"""
    return await attach_to_quote(store, quote_id, file)
