"""
Contracts Router - upload, list, manage contracts, view analyses and chat
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user
from database import get_db
from database_models import User
from crud.analysis import AnalysisRepository
from crud.contract import ContractRepository
from models.analysis_models import ChatMessageRequest
from models.contract_models import ContractStatus, ContractType, ContractUpdateRequest
from services.analysis_service import ContractAnalyzer
from services.blob_service import BlobStore
from services.contract_service import ContractService
from services.subscription_service import SubscriptionService, apply_trial_restrictions
from utils.dependencies import get_analyzer, get_blob_store
from utils.errors import NotFoundError
from utils.rate_limit import RateLimit
from utils.shared_utils import (
    analysis_to_dict,
    clamp_pagination,
    contract_to_dict,
    iso,
    log_endpoint_event,
)

logger = logging.getLogger(__name__)

contracts_router = APIRouter(prefix="/api/contracts", tags=["contracts"])


def _message_to_dict(message) -> dict:
    return {
        "id": message.id,
        "role": message.role,
        "content": message.content,
        "referenced_clauses": message.referenced_clauses or [],
        "metadata": message.message_metadata or {},
        "created_at": iso(message.created_at),
    }


@contracts_router.get("", dependencies=[Depends(RateLimit("general"))])
async def list_contracts(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    status: Optional[ContractStatus] = Query(None),
    contract_type: Optional[ContractType] = Query(None),
    search: Optional[str] = Query(None, max_length=200),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    page, limit = clamp_pagination(page, limit)
    contracts, total = await ContractRepository(db).list_for_user(
        current_user.id, page=page, limit=limit, status=status, contract_type=contract_type, search=search
    )
    return {
        "contracts": [contract_to_dict(c) for c in contracts],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit,
        },
    }


@contracts_router.post("/upload", status_code=201, dependencies=[Depends(RateLimit("upload"))])
async def upload_contract(
    file: UploadFile = File(...),
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    contract_type: Optional[str] = Form(None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    """Upload a contract (PDF, DOC, DOCX or TXT). Counts against the user's plan."""
    subscriptions = SubscriptionService(db)
    contract = await ContractService(db, blob_store, subscriptions).upload_contract(
        current_user.id, file, title=title, description=description, contract_type=contract_type
    )
    remaining = await subscriptions.remaining_trials(current_user.id)
    log_endpoint_event("/api/contracts/upload", current_user.id, "success", {"contract_id": contract.id})
    return {"contract": contract_to_dict(contract), "remaining_trials": remaining}


@contracts_router.get("/{contract_id}", dependencies=[Depends(RateLimit("general"))])
async def get_contract(
    contract_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    contract = await ContractService(db, blob_store).get_contract(current_user.id, contract_id)
    analysis = await AnalysisRepository(db).get_latest_for_contract(contract_id, current_user.id)
    data = contract_to_dict(contract)
    data["analysis"] = (
        {"id": analysis.id, "status": analysis.status, "overall_risk_score": analysis.overall_risk_score}
        if analysis else None
    )
    return {"contract": data}


@contracts_router.patch("/{contract_id}", dependencies=[Depends(RateLimit("general"))])
async def update_contract(
    contract_id: str,
    body: ContractUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    contract = await ContractService(db, blob_store).update_contract(
        current_user.id, contract_id, body.model_dump(exclude_unset=True)
    )
    return {"contract": contract_to_dict(contract)}


@contracts_router.delete("/{contract_id}", dependencies=[Depends(RateLimit("general"))])
async def delete_contract(
    contract_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    await ContractService(db, blob_store).delete_contract(current_user.id, contract_id)
    log_endpoint_event(f"/api/contracts/{contract_id}", current_user.id, "deleted")
    return {"ok": True, "message": "Contract deleted successfully"}


@contracts_router.get("/{contract_id}/analysis", dependencies=[Depends(RateLimit("general"))])
async def get_contract_analysis(
    contract_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    """Latest analysis for a contract. Trial users get the truncated view."""
    contract = await ContractService(db, blob_store).get_contract(current_user.id, contract_id)
    analysis = await AnalysisRepository(db).get_latest_for_contract(contract_id, current_user.id)
    if not analysis:
        raise NotFoundError("Analysis not found", code="ANALYSIS_NOT_FOUND")

    is_trial = await SubscriptionService(db).is_trial_user(current_user.id)
    data = analysis_to_dict(analysis)
    view = apply_trial_restrictions(data, is_trial)
    data.update(
        risk_clauses=view.risk_clauses,
        missing_clauses=view.missing_clauses,
        recommendations=view.recommendations,
    )
    return {
        "contract": contract_to_dict(contract),
        "analysis": data,
        "restrictions": {
            "is_trial": is_trial,
            "is_restricted": view.is_restricted,
            "hidden": view.hidden,
            "hidden_total": view.hidden_total,
        },
    }


@contracts_router.get("/{contract_id}/chat", dependencies=[Depends(RateLimit("general"))])
async def get_chat(
    contract_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    chat, messages = await ContractService(db, blob_store).get_chat(current_user.id, contract_id)
    return {
        "chat": {"id": chat.id, "title": chat.title, "status": chat.status, "created_at": iso(chat.created_at)},
        "messages": [_message_to_dict(m) for m in messages],
    }


@contracts_router.post("/{contract_id}/chat", dependencies=[Depends(RateLimit("analysis"))])
async def send_chat_message(
    contract_id: str,
    body: ChatMessageRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
    analyzer: ContractAnalyzer = Depends(get_analyzer),
):
    chat, user_message, assistant_message = await ContractService(db, blob_store).send_chat_message(
        current_user.id, contract_id, body.message, analyzer
    )
    log_endpoint_event(f"/api/contracts/{contract_id}/chat", current_user.id, "success", {"chat_id": chat.id})
    return {
        "chat_id": chat.id,
        "user_message": _message_to_dict(user_message),
        "assistant_message": _message_to_dict(assistant_message),
    }
