"""
ChatRepository for contract chats and their messages
"""

from typing import List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete

from database_models import ChatMessage, ContractChat


class ChatRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_or_create_active(self, contract_id: str, user_id: str, title: Optional[str] = None) -> ContractChat:
        """Return the user's active chat for a contract, opening one if none exists."""
        result = await self.db.execute(
            select(ContractChat)
            .where(
                ContractChat.contract_id == contract_id,
                ContractChat.user_id == user_id,
                ContractChat.status == "active",
            )
            .order_by(ContractChat.created_at.asc())
            .limit(1)
        )
        chat = result.scalar_one_or_none()
        if chat:
            return chat

        chat = ContractChat(contract_id=contract_id, user_id=user_id, title=title)
        self.db.add(chat)
        await self.db.flush()
        return chat

    async def list_messages(self, chat_id: str) -> List[ChatMessage]:
        result = await self.db.execute(
            select(ChatMessage).where(ChatMessage.chat_id == chat_id).order_by(ChatMessage.created_at.asc())
        )
        return list(result.scalars().all())

    async def add_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        referenced_clauses: Optional[list] = None,
        metadata: Optional[dict] = None,
    ) -> ChatMessage:
        message = ChatMessage(
            chat_id=chat_id,
            role=role,
            content=content,
            referenced_clauses=referenced_clauses,
            message_metadata=metadata,
        )
        self.db.add(message)
        await self.db.flush()
        return message

    async def delete_for_contract(self, contract_id: str) -> None:
        chat_ids = select(ContractChat.id).where(ContractChat.contract_id == contract_id)
        await self.db.execute(delete(ChatMessage).where(ChatMessage.chat_id.in_(chat_ids)))
        await self.db.execute(delete(ContractChat).where(ContractChat.contract_id == contract_id))
