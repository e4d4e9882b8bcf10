"""
Analysis Router - run analyses and read or delete their results
"""

import logging
from collections import Counter
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user
from database import get_db
from database_models import User
from crud.analysis import AnalysisRepository
from crud.contract import ContractRepository
from models.analysis_models import AnalyzeRequest
from services.analysis_service import ContractAnalyzer
from services.blob_service import BlobStore
from services.contract_service import AnalysisWorkflow
from services.subscription_service import SubscriptionService, apply_trial_restrictions
from utils.dependencies import get_analyzer, get_blob_store
from utils.errors import NotFoundError
from utils.rate_limit import RateLimit
from utils.shared_utils import analysis_to_dict, log_endpoint_event

logger = logging.getLogger(__name__)

analysis_router = APIRouter(prefix="/api/analysis", tags=["analysis"])

RISK_LEVELS = ("low", "medium", "high", "critical")


def _distribution(values) -> dict:
    counts = Counter(values)
    return {level: counts.get(level, 0) for level in RISK_LEVELS}


@analysis_router.post("/analyze", status_code=201, dependencies=[Depends(RateLimit("analysis"))])
async def analyze_contract(
    body: AnalyzeRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    analyzer: ContractAnalyzer = Depends(get_analyzer),
    blob_store: BlobStore = Depends(get_blob_store),
):
    """Analyze an uploaded contract. Counts against the user's plan."""
    subscriptions = SubscriptionService(db)
    workflow = AnalysisWorkflow(db, analyzer, blob_store, subscriptions)
    analysis = await workflow.run(current_user.id, body.contract_id, body.analysis_type)

    is_trial = await subscriptions.is_trial_user(current_user.id)
    data = analysis_to_dict(analysis)
    view = apply_trial_restrictions(data, is_trial)
    data.update(
        risk_clauses=view.risk_clauses,
        missing_clauses=view.missing_clauses,
        recommendations=view.recommendations,
    )
    log_endpoint_event("/api/analysis/analyze", current_user.id, "success", {
        "contract_id": body.contract_id,
        "analysis_id": analysis.id,
    })
    return {
        "analysis": data,
        "restrictions": {"is_restricted": view.is_restricted, "hidden": view.hidden, "hidden_total": view.hidden_total},
        "remaining_trials": await subscriptions.remaining_trials(current_user.id),
    }


@analysis_router.get("/{analysis_id}", dependencies=[Depends(RateLimit("general"))])
async def get_analysis(
    analysis_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Analysis with clause distributions. Trial users get the truncated view."""
    analysis = await AnalysisRepository(db).get_for_user(analysis_id, current_user.id)
    if not analysis:
        raise NotFoundError("Analysis not found", code="ANALYSIS_NOT_FOUND")

    # Distributions and totals always describe the full result
    statistics = {
        "total_risk_clauses": len(analysis.risk_clauses),
        "total_missing_clauses": len(analysis.missing_clauses),
        "total_recommendations": len(analysis.recommendations or []),
        "risk_distribution": _distribution(c.risk_level for c in analysis.risk_clauses),
        "missing_clause_distribution": _distribution(c.importance for c in analysis.missing_clauses),
    }

    is_trial = await SubscriptionService(db).is_trial_user(current_user.id)
    data = analysis_to_dict(analysis)
    view = apply_trial_restrictions(data, is_trial)
    data.update(
        risk_clauses=view.risk_clauses,
        missing_clauses=view.missing_clauses,
        recommendations=view.recommendations,
    )
    return {
        "analysis": data,
        "statistics": statistics,
        "restrictions": {"is_restricted": view.is_restricted, "hidden": view.hidden, "hidden_total": view.hidden_total},
    }


@analysis_router.delete("/{analysis_id}", dependencies=[Depends(RateLimit("general"))])
async def delete_analysis(
    analysis_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Delete an analysis and put its contract back to ``uploaded``."""
    repo = AnalysisRepository(db)
    analysis = await repo.get_for_user(analysis_id, current_user.id)
    if not analysis:
        raise NotFoundError("Analysis not found", code="ANALYSIS_NOT_FOUND")

    contract_id = analysis.contract_id
    await repo.delete_analysis(analysis)
    await ContractRepository(db).set_status(contract_id, "uploaded")
    await db.commit()
    log_endpoint_event(f"/api/analysis/{analysis_id}", current_user.id, "deleted", {"contract_id": contract_id})
    return {"ok": True, "message": "Analysis deleted successfully"}
