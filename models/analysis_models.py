"""
Analysis result and request models
"""
from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


RiskLevel = Literal["low", "medium", "high", "critical"]


class RiskClauseItem(BaseModel):
    clause_text: str
    risk_level: RiskLevel
    risk_category: Optional[str] = None
    explanation: Optional[str] = None
    recommendation: Optional[str] = None
    location: Optional[str] = None

    @field_validator("risk_level", mode="before")
    @classmethod
    def _lower_level(cls, value):
        return value.lower() if isinstance(value, str) else value


class MissingClauseItem(BaseModel):
    clause_type: str
    importance: RiskLevel
    description: Optional[str] = None
    suggested_text: Optional[str] = None
    legal_impact: Optional[str] = None

    @field_validator("importance", mode="before")
    @classmethod
    def _lower_importance(cls, value):
        return value.lower() if isinstance(value, str) else value


class AnalysisResult(BaseModel):
    """Typed form of the model's JSON reply."""
    model_config = ConfigDict(extra="ignore")

    overall_risk_score: float = Field(ge=0, le=100)
    summary: str
    key_findings: List[str] = Field(default_factory=list)
    risk_clauses: List[RiskClauseItem] = Field(default_factory=list)
    missing_clauses: List[MissingClauseItem] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class AnalyzeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    contract_id: str = Field(alias="contractId", min_length=1)
    analysis_type: Literal["full", "quick", "risk_only"] = Field(default="full", alias="analysisType")


class ChatMessageRequest(BaseModel):
    message: str = Field(min_length=1, max_length=4000)

    @field_validator("message")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Message is required")
        return value.strip()


class ChatAnswer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    answer: str
    referenced_clauses: List[str] = Field(default_factory=list)
