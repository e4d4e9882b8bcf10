"""
AnalysisRepository for analyses and their clause rows
"""

from datetime import datetime
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete, func, update

from database_models import Analysis, MissingClause, RiskClause, utcnow


class AnalysisRepository:
    """
    Repository class for Analysis database operations.
    Clause rows are owned by their analysis and removed with it.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_for_user(self, analysis_id: str, user_id: str) -> Optional[Analysis]:
        result = await self.db.execute(
            select(Analysis).where(Analysis.id == analysis_id, Analysis.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_latest_for_contract(self, contract_id: str, user_id: str) -> Optional[Analysis]:
        result = await self.db.execute(
            select(Analysis)
            .where(Analysis.contract_id == contract_id, Analysis.user_id == user_id)
            .order_by(Analysis.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def count_since(self, user_id: str, since: datetime) -> int:
        result = await self.db.execute(
            select(func.count(Analysis.id)).where(Analysis.user_id == user_id, Analysis.created_at >= since)
        )
        return int(result.scalar_one())

    async def count_by_status(self, user_id: str) -> dict:
        result = await self.db.execute(
            select(Analysis.status, func.count(Analysis.id))
            .where(Analysis.user_id == user_id)
            .group_by(Analysis.status)
        )
        return {status: count for status, count in result.all()}

    async def create_analysis(self, data: dict) -> Analysis:
        analysis = Analysis(risk_clauses=[], missing_clauses=[], **data)
        self.db.add(analysis)
        await self.db.flush()
        return analysis

    async def save_result(self, analysis: Analysis, result, model_used: str, duration_ms: int) -> Analysis:
        """
        Store a parsed model reply on an analysis row and mark it completed.

        Args:
            analysis: Analysis row in ``analyzing`` state
            result: AnalysisResult parsed from the model reply
            model_used: Model name reported by the adapter
            duration_ms: Wall time of the model call
        """
        analysis.overall_risk_score = result.overall_risk_score
        analysis.summary = result.summary
        analysis.key_findings = list(result.key_findings)
        analysis.recommendations = list(result.recommendations)
        analysis.model_used = model_used
        analysis.analysis_duration_ms = duration_ms
        analysis.status = "completed"
        analysis.error_message = None

        for clause in result.risk_clauses:
            analysis.risk_clauses.append(
                RiskClause(
                    clause_text=clause.clause_text,
                    risk_level=clause.risk_level,
                    risk_category=clause.risk_category,
                    explanation=clause.explanation,
                    recommendation=clause.recommendation,
                    location=clause.location,
                )
            )
        for clause in result.missing_clauses:
            analysis.missing_clauses.append(
                MissingClause(
                    clause_type=clause.clause_type,
                    importance=clause.importance,
                    description=clause.description,
                    suggested_text=clause.suggested_text,
                    legal_impact=clause.legal_impact,
                )
            )
        await self.db.flush()
        return analysis

    async def mark_failed(self, analysis_id: str, error_message: str) -> None:
        await self.db.execute(
            update(Analysis)
            .where(Analysis.id == analysis_id)
            .values(status="failed", error_message=error_message, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def delete_analysis(self, analysis: Analysis) -> None:
        await self.db.delete(analysis)
        await self.db.flush()

    async def delete_for_contract(self, contract_id: str) -> None:
        """Remove every analysis of a contract together with its clause rows."""
        analysis_ids = select(Analysis.id).where(Analysis.contract_id == contract_id)
        await self.db.execute(delete(RiskClause).where(RiskClause.analysis_id.in_(analysis_ids)))
        await self.db.execute(delete(MissingClause).where(MissingClause.analysis_id.in_(analysis_ids)))
        await self.db.execute(delete(Analysis).where(Analysis.contract_id == contract_id))
