"""
ContractRepository for database operations on uploaded contracts
"""

from datetime import datetime
from typing import List, Optional, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, delete, func, or_

from database_models import Contract, utcnow


class ContractRepository:
    """
    Repository class for Contract database operations.
    Every lookup is scoped to the owning user.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_for_user(self, contract_id: str, user_id: str) -> Optional[Contract]:
        result = await self.db.execute(
            select(Contract).where(Contract.id == contract_id, Contract.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def create_contract(self, data: dict) -> Contract:
        contract = Contract(**data)
        self.db.add(contract)
        await self.db.flush()
        await self.db.refresh(contract)
        return contract

    async def list_for_user(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
        contract_type: Optional[str] = None,
        search: Optional[str] = None,
    ) -> Tuple[List[Contract], int]:
        """
        Page through a user's contracts, newest first.

        Returns:
            (contracts on the page, total matching rows)
        """
        filters = [Contract.user_id == user_id]
        if status:
            filters.append(Contract.status == status)
        if contract_type:
            filters.append(Contract.contract_type == contract_type)
        if search:
            pattern = f"%{search}%"
            filters.append(or_(Contract.title.ilike(pattern), Contract.description.ilike(pattern)))

        total = (await self.db.execute(select(func.count(Contract.id)).where(*filters))).scalar_one()
        result = await self.db.execute(
            select(Contract)
            .where(*filters)
            .order_by(Contract.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), int(total)

    async def count_since(self, user_id: str, since: datetime) -> int:
        result = await self.db.execute(
            select(func.count(Contract.id)).where(Contract.user_id == user_id, Contract.created_at >= since)
        )
        return int(result.scalar_one())

    async def update_contract(self, contract: Contract, updates: dict) -> Contract:
        for key, value in updates.items():
            if hasattr(contract, key):
                setattr(contract, key, value)
        await self.db.flush()
        await self.db.refresh(contract)
        return contract

    async def claim_for_analysis(self, contract_id: str, user_id: str) -> bool:
        """
        Move a contract to ``analyzing`` unless it is already there.

        Returns:
            True if this call made the transition
        """
        result = await self.db.execute(
            update(Contract)
            .where(
                Contract.id == contract_id,
                Contract.user_id == user_id,
                Contract.status != "analyzing",
            )
            .values(status="analyzing", updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_status(self, contract_id: str, status: str) -> None:
        await self.db.execute(
            update(Contract)
            .where(Contract.id == contract_id)
            .values(status=status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def delete_contract(self, contract_id: str, user_id: str) -> int:
        result = await self.db.execute(
            delete(Contract).where(Contract.id == contract_id, Contract.user_id == user_id)
        )
        return result.rowcount
