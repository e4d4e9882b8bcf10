"""
Shared utility functions for routers and services
"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 50


def log_endpoint_event(endpoint: str, user_id: Optional[str] = None, result: str = "success", details: Optional[dict] = None):
    """Log endpoint execution to app.log"""
    logger.info(f"{endpoint} | user={user_id or 'none'} | {result} | {json.dumps(details or {}, default=str)}")


def iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def clamp_pagination(page: int, limit: int) -> tuple[int, int]:
    """Normalize page/limit query values: page >= 1, 1 <= limit <= MAX_PAGE_SIZE."""
    return max(1, page), max(1, min(limit, MAX_PAGE_SIZE))


def contract_to_dict(contract) -> dict:
    return {
        "id": contract.id,
        "title": contract.title,
        "description": contract.description,
        "contract_type": contract.contract_type,
        "file_name": contract.file_name,
        "file_size": contract.file_size,
        "file_type": contract.file_type,
        "status": contract.status,
        "created_at": iso(contract.created_at),
        "updated_at": iso(contract.updated_at),
    }


def risk_clause_to_dict(clause) -> dict:
    return {
        "id": clause.id,
        "clause_text": clause.clause_text,
        "risk_level": clause.risk_level,
        "risk_category": clause.risk_category,
        "explanation": clause.explanation,
        "recommendation": clause.recommendation,
        "location": clause.location,
    }


def missing_clause_to_dict(clause) -> dict:
    return {
        "id": clause.id,
        "clause_type": clause.clause_type,
        "importance": clause.importance,
        "description": clause.description,
        "suggested_text": clause.suggested_text,
        "legal_impact": clause.legal_impact,
    }


def analysis_to_dict(analysis) -> dict:
    return {
        "id": analysis.id,
        "contract_id": analysis.contract_id,
        "status": analysis.status,
        "analysis_type": analysis.analysis_type,
        "overall_risk_score": analysis.overall_risk_score,
        "summary": analysis.summary,
        "key_findings": analysis.key_findings or [],
        "recommendations": analysis.recommendations or [],
        "risk_clauses": [risk_clause_to_dict(c) for c in analysis.risk_clauses],
        "missing_clauses": [missing_clause_to_dict(c) for c in analysis.missing_clauses],
        "model_used": analysis.model_used,
        "analysis_duration_ms": analysis.analysis_duration_ms,
        "error_message": analysis.error_message,
        "created_at": iso(analysis.created_at),
        "updated_at": iso(analysis.updated_at),
    }
