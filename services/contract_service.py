"""
Contract Service - uploads, contract lifecycle, chat and the analysis workflow
"""
import logging
import time
from typing import Optional

from fastapi import UploadFile
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from crud.analysis import AnalysisRepository
from crud.chat import ChatRepository
from crud.contract import ContractRepository
from database_models import Analysis, Contract, new_id
from services.analysis_service import ContractAnalyzer, summarize_for_chat
from services.blob_service import BlobStore, contract_blob_path
from services.document_service import extract_text
from services.subscription_service import ACTION_ANALYSIS, ACTION_CONTRACT, SubscriptionService
from utils.errors import ApiError, ConflictError, NotFoundError, QuotaExceededError, ValidationError
from utils.security_utils import validate_uploaded_file

logger = logging.getLogger(__name__)

CONTRACT_TYPES = ("employment", "service", "nda", "partnership", "lease", "other")


class ContractService:
    """
    Service class for contract business logic.
    Every operation is scoped to the requesting user.
    """

    def __init__(self, db: AsyncSession, blob_store: BlobStore, subscriptions: Optional[SubscriptionService] = None):
        self.db = db
        self.blob_store = blob_store
        self.subscriptions = subscriptions or SubscriptionService(db)
        self.contract_repo = ContractRepository(db)
        self.analysis_repo = AnalysisRepository(db)
        self.chat_repo = ChatRepository(db)

    async def get_contract(self, user_id: str, contract_id: str) -> Contract:
        contract = await self.contract_repo.get_for_user(contract_id, user_id)
        if not contract:
            raise NotFoundError("Contract not found", code="CONTRACT_NOT_FOUND")
        return contract

    async def upload_contract(
        self,
        user_id: str,
        file: UploadFile,
        title: Optional[str] = None,
        description: Optional[str] = None,
        contract_type: Optional[str] = None,
    ) -> Contract:
        """
        Validate, meter, store and record an uploaded contract.

        Order matters: the file is validated before any quota is spent.

        Raises:
            ValidationError: Bad file or form fields
            QuotaExceededError: Trial spent or monthly cap reached
        """
        contract_type = (contract_type or "other").lower()
        if contract_type not in CONTRACT_TYPES:
            raise ValidationError(
                f"Invalid contract type. Allowed: {', '.join(CONTRACT_TYPES)}",
                details={"field": "contract_type"},
            )
        if title is not None and len(title) > 255:
            raise ValidationError("Title must be at most 255 characters", details={"field": "title"})

        filename, content, mime_type = await validate_uploaded_file(file)
        await self.subscriptions.validate_file_size(user_id, len(content))
        await self.subscriptions.authorize(user_id, ACTION_CONTRACT)

        contract_id = new_id()
        blob_key = contract_blob_path(user_id, contract_id, filename)
        await self.blob_store.put(blob_key, content)

        try:
            contract = await self.contract_repo.create_contract({
                "id": contract_id,
                "user_id": user_id,
                "title": (title or filename).strip()[:255],
                "description": description,
                "contract_type": contract_type,
                "file_name": filename,
                "file_path": blob_key,
                "file_size": len(content),
                "file_type": mime_type,
                "content": extract_text(filename, content) or None,
                "status": "uploaded",
            })
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            await self.blob_store.delete(blob_key)
            raise

        logger.info(f"Contract {contract_id} uploaded by user {user_id} ({len(content)} bytes)")
        return contract

    async def update_contract(self, user_id: str, contract_id: str, updates: dict) -> Contract:
        contract = await self.get_contract(user_id, contract_id)
        updates = {k: v for k, v in updates.items() if v is not None}
        if not updates:
            raise ValidationError("No fields to update")
        return await self.contract_repo.update_contract(contract, updates)

    async def delete_contract(self, user_id: str, contract_id: str) -> None:
        """
        Delete a contract with its analyses, chats and file.

        Dependent rows and the file are removed best-effort; a failure there is
        logged and the contract row is still deleted.
        """
        contract = await self.get_contract(user_id, contract_id)
        file_path = contract.file_path

        for label, step in (
            ("analyses", self.analysis_repo.delete_for_contract),
            ("chats", self.chat_repo.delete_for_contract),
        ):
            try:
                async with self.db.begin_nested():
                    await step(contract_id)
            except SQLAlchemyError as e:
                logger.warning(f"Failed to delete {label} for contract {contract_id}: {e}")

        deleted = await self.contract_repo.delete_contract(contract_id, user_id)
        if not deleted:
            raise NotFoundError("Contract not found", code="CONTRACT_NOT_FOUND")
        await self.db.commit()

        if file_path:
            try:
                await self.blob_store.delete(file_path)
            except OSError as e:
                logger.warning(f"Failed to delete file for contract {contract_id}: {e}")
        logger.info(f"Contract {contract_id} deleted by user {user_id}")

    async def get_chat(self, user_id: str, contract_id: str):
        contract = await self.get_contract(user_id, contract_id)
        chat = await self.chat_repo.get_or_create_active(contract_id, user_id, title=f"Discussion: {contract.title}")
        messages = await self.chat_repo.list_messages(chat.id)
        return chat, messages

    async def send_chat_message(self, user_id: str, contract_id: str, message: str, analyzer: ContractAnalyzer):
        """
        Store the user's question, ask the model, store and return the answer.

        The user message is kept even if the model call fails.
        """
        contract = await self.get_contract(user_id, contract_id)
        chat = await self.chat_repo.get_or_create_active(contract_id, user_id, title=f"Discussion: {contract.title}")
        user_message = await self.chat_repo.add_message(chat.id, "user", message)
        await self.db.commit()

        analysis = await self.analysis_repo.get_latest_for_contract(contract_id, user_id)
        started = time.monotonic()
        answer = await analyzer.answer_question(message, contract.content or "", summarize_for_chat(analysis))
        assistant_message = await self.chat_repo.add_message(
            chat.id,
            "assistant",
            answer.answer,
            referenced_clauses=answer.referenced_clauses,
            metadata={"model": analyzer.model, "duration_ms": int((time.monotonic() - started) * 1000)},
        )
        await self.db.commit()
        return chat, user_message, assistant_message


class AnalysisWorkflow:
    """
    Runs one analysis of one contract.

    States: contract uploaded|failed|completed -> analyzing -> completed|failed.
    No analysis row is left in ``analyzing`` when run() returns or raises.
    """

    def __init__(
        self,
        db: AsyncSession,
        analyzer: ContractAnalyzer,
        blob_store: BlobStore,
        subscriptions: Optional[SubscriptionService] = None,
    ):
        self.db = db
        self.analyzer = analyzer
        self.blob_store = blob_store
        self.subscriptions = subscriptions or SubscriptionService(db)
        self.contract_repo = ContractRepository(db)
        self.analysis_repo = AnalysisRepository(db)

    async def run(self, user_id: str, contract_id: str, analysis_type: str = "full") -> Analysis:
        """
        Analyze a contract for its owner.

        Raises:
            NotFoundError: CONTRACT_NOT_FOUND
            ConflictError: ANALYSIS_IN_PROGRESS or ANALYSIS_ALREADY_EXISTS
            QuotaExceededError: Trial spent or monthly cap reached
            ApiError: TEXT_EXTRACTION_FAILED, AI_ANALYSIS_FAILED or AI_RESPONSE_INVALID
        """
        contract = await self.contract_repo.get_for_user(contract_id, user_id)
        if not contract:
            raise NotFoundError("Contract not found", code="CONTRACT_NOT_FOUND")

        existing = await self.analysis_repo.get_latest_for_contract(contract_id, user_id)
        if existing is not None:
            if existing.status == "analyzing":
                raise ConflictError("Analysis already in progress", code="ANALYSIS_IN_PROGRESS")
            if existing.status == "completed":
                raise ConflictError(
                    "Analysis already exists for this contract",
                    code="ANALYSIS_ALREADY_EXISTS",
                    details={"analysis_id": existing.id},
                )
            await self.analysis_repo.delete_analysis(existing)

        previous_status = contract.status
        if not await self.contract_repo.claim_for_analysis(contract_id, user_id):
            await self.db.rollback()
            raise ConflictError("Analysis already in progress", code="ANALYSIS_IN_PROGRESS")
        await self.db.commit()

        try:
            await self.subscriptions.authorize(user_id, ACTION_ANALYSIS)
            analysis = await self.analysis_repo.create_analysis({
                "contract_id": contract_id,
                "user_id": user_id,
                "status": "analyzing",
                "analysis_type": analysis_type,
            })
            await self.db.commit()
        except QuotaExceededError:
            await self.db.rollback()
            await self._release_claim(contract_id, previous_status)
            raise
        except Exception as e:
            # The quota may already be spent, so the contract is failed rather than restored
            await self.db.rollback()
            logger.error(f"Could not start analysis for contract {contract_id}: {e}", exc_info=True)
            await self._release_claim(contract_id, "failed")
            raise
        analysis_id = analysis.id
        logger.info(f"Analysis {analysis_id} started for contract {contract_id}")

        try:
            text = await self._contract_text(contract)
            if not text:
                raise ApiError(
                    "Could not extract text from the contract file",
                    status_code=422,
                    code="TEXT_EXTRACTION_FAILED",
                )
            started = time.monotonic()
            result = await self.analyzer.analyze_contract(text, contract.contract_type)
            duration_ms = int((time.monotonic() - started) * 1000)
            await self.analysis_repo.save_result(analysis, result, self.analyzer.model, duration_ms)
            await self.contract_repo.set_status(contract_id, "completed")
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            message = e.message if isinstance(e, ApiError) else str(e) or type(e).__name__
            await self._mark_failed(analysis_id, contract_id, message)
            raise

        analysis = await self.analysis_repo.get_for_user(analysis_id, user_id)
        logger.info(f"Analysis {analysis_id} completed for contract {contract_id}")
        return analysis

    async def _contract_text(self, contract: Contract) -> str:
        if contract.content and contract.content.strip():
            return contract.content
        if not contract.file_path:
            return ""
        try:
            data = await self.blob_store.get(contract.file_path)
        except FileNotFoundError:
            logger.warning(f"File missing for contract {contract.id}: {contract.file_path}")
            return ""
        return extract_text(contract.file_name, data)

    async def _release_claim(self, contract_id: str, status: str) -> None:
        try:
            await self.contract_repo.set_status(contract_id, status)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Could not release contract {contract_id} from analyzing: {e}", exc_info=True)

    async def _mark_failed(self, analysis_id: str, contract_id: str, message: str) -> None:
        try:
            await self.analysis_repo.mark_failed(analysis_id, message[:1000])
            await self.contract_repo.set_status(contract_id, "failed")
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Could not record failure of analysis {analysis_id}: {e}", exc_info=True)
        logger.warning(f"Analysis {analysis_id} failed for contract {contract_id}: {message}")
