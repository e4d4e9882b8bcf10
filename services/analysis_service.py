"""
Analysis Service - contract risk analysis and contract Q&A through the OpenAI API
"""
import json
import logging
import re
import time
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError
from pydantic import ValidationError as PydanticValidationError

from config.settings import settings
from models.analysis_models import AnalysisResult, ChatAnswer
from utils.errors import ApiError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert legal contract analyst. Analyze contracts for risks, "
    "missing clauses, and provide actionable recommendations. Reply with JSON only."
)

CHAT_SYSTEM_PROMPT = (
    "You are a legal assistant answering questions about a specific contract. "
    "Answer only from the contract text and analysis provided. Reply with JSON only."
)

OUTPUT_SCHEMA = """{
  "overall_risk_score": number between 0 and 100 (100 is highest risk),
  "summary": "string",
  "key_findings": ["string"],
  "risk_clauses": [
    {
      "clause_text": "string",
      "risk_level": "low|medium|high|critical",
      "risk_category": "string",
      "explanation": "string",
      "recommendation": "string",
      "location": "string"
    }
  ],
  "missing_clauses": [
    {
      "clause_type": "string",
      "importance": "low|medium|high|critical",
      "description": "string",
      "suggested_text": "string",
      "legal_impact": "string"
    }
  ],
  "recommendations": ["string"]
}"""

CHAT_SCHEMA = """{
  "answer": "string",
  "referenced_clauses": ["short quotes of the clauses the answer relies on"]
}"""

# Largest slice of contract text embedded in a chat prompt
CHAT_CONTEXT_CHARS = 12000

_FENCE_PATTERN = re.compile(r"^\s*```(?:json|JSON)?\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


class AnalysisServiceError(ApiError):
    """The model API could not be reached or returned an error."""
    status_code = 502
    code = "AI_ANALYSIS_FAILED"


class AnalysisParseError(ApiError):
    """The model replied, but not with JSON matching the expected schema."""
    status_code = 502
    code = "AI_RESPONSE_INVALID"


def strip_code_fences(text: str) -> str:
    """Unwrap a reply wrapped in a markdown code block."""
    match = _FENCE_PATTERN.match(text)
    return match.group(1).strip() if match else text.strip()


def parse_analysis_reply(text: Optional[str]) -> AnalysisResult:
    """
    Parse the model's reply into an AnalysisResult.

    Raises:
        AnalysisParseError: If the reply is empty, not JSON, or off-schema
    """
    if not text or not text.strip():
        raise AnalysisParseError("AI service returned an empty response")
    try:
        payload = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as e:
        raise AnalysisParseError("AI service returned malformed JSON", details={"position": e.pos})
    if not isinstance(payload, dict):
        raise AnalysisParseError("AI service returned JSON that is not an object")
    try:
        return AnalysisResult.model_validate(payload)
    except PydanticValidationError as e:
        raise AnalysisParseError(
            "AI service response does not match the analysis schema",
            details=[{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()],
        )


def build_analysis_prompt(text: str, contract_type: Optional[str]) -> str:
    contract_type = contract_type or "other"
    return (
        f"Analyze the following {contract_type} contract and provide:\n\n"
        "1. Overall risk score from 0 to 100\n"
        "2. A short summary and the key findings\n"
        "3. Risky clauses with explanations and suggested revisions\n"
        "4. Important protections that are missing\n"
        "5. Specific recommendations for improvement\n\n"
        f"Contract content:\n{text}\n\n"
        f"Respond with a single JSON object with exactly this structure:\n{OUTPUT_SCHEMA}"
    )


class ContractAnalyzer:
    """Adapter over the chat completions endpoint. One call per request, no retries."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        self.model = model or settings.openai_model
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not settings.openai_api_key:
                raise AnalysisServiceError("OPENAI_API_KEY is not set. Cannot analyze contracts.")
            self._client = AsyncOpenAI(api_key=settings.openai_api_key)
        return self._client

    async def _complete(self, system_prompt: str, user_prompt: str, max_tokens: Optional[int] = None) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                max_tokens=max_tokens or settings.openai_max_tokens,
                temperature=settings.openai_temperature,
            )
        except OpenAIError as e:
            logger.error(f"OpenAI request failed: {e}")
            raise AnalysisServiceError(f"AI analysis failed: {e}")
        if not response.choices:
            raise AnalysisParseError("AI service returned no choices")
        return response.choices[0].message.content or ""

    async def analyze_contract(self, text: str, contract_type: Optional[str] = None) -> AnalysisResult:
        """
        Analyze contract text.

        Args:
            text: Extracted contract text
            contract_type: Contract category used to frame the prompt

        Returns:
            AnalysisResult

        Raises:
            AnalysisServiceError: Network or API failure
            AnalysisParseError: Reply is not valid JSON for the schema
        """
        started = time.monotonic()
        reply = await self._complete(SYSTEM_PROMPT, build_analysis_prompt(text, contract_type))
        result = parse_analysis_reply(reply)
        logger.info(
            f"Contract analyzed with {self.model} in {int((time.monotonic() - started) * 1000)}ms: "
            f"{len(result.risk_clauses)} risk clauses, {len(result.missing_clauses)} missing clauses"
        )
        return result

    async def answer_question(
        self,
        question: str,
        contract_text: str,
        analysis: Optional[Dict[str, Any]] = None,
    ) -> ChatAnswer:
        """Answer a user question about one contract, citing the clauses used."""
        context = contract_text[:CHAT_CONTEXT_CHARS]
        prompt = f"Contract text:\n{context}\n\n"
        if analysis:
            prompt += f"Existing analysis:\n{json.dumps(analysis, default=str)}\n\n"
        prompt += f"Question: {question}\n\nRespond with a JSON object:\n{CHAT_SCHEMA}"

        reply = await self._complete(CHAT_SYSTEM_PROMPT, prompt, max_tokens=1500)
        try:
            payload = json.loads(strip_code_fences(reply))
            return ChatAnswer.model_validate(payload)
        except (json.JSONDecodeError, PydanticValidationError):
            # Plain-text answers are still useful to the user
            if reply.strip():
                return ChatAnswer(answer=reply.strip(), referenced_clauses=[])
            raise AnalysisParseError("AI service returned an empty response")


def summarize_for_chat(analysis) -> Optional[Dict[str, List[Any]]]:
    """Compact view of a stored analysis for the chat prompt."""
    if analysis is None or analysis.status != "completed":
        return None
    return {
        "overall_risk_score": analysis.overall_risk_score,
        "summary": analysis.summary,
        "risk_clauses": [
            {"clause_text": c.clause_text, "risk_level": c.risk_level, "explanation": c.explanation}
            for c in analysis.risk_clauses
        ],
        "missing_clauses": [
            {"clause_type": c.clause_type, "importance": c.importance} for c in analysis.missing_clauses
        ],
    }
