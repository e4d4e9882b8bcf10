"""
UserRepository for database operations on the User profile model
"""

from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError
from sqlalchemy import select
from database_models import User, utcnow


class UserRepository:
    """
    Repository class for User database operations.
    Encapsulates all database logic for the User model.
    """

    def __init__(self, db: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            db: AsyncSession instance for database operations
        """
        self.db = db

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_or_create_user(self, user_id: str, email: Optional[str] = None) -> User:
        """
        Return the profile for an identity-provider subject, creating it on first sight.

        Args:
            user_id: Subject claim from the session token
            email: Email claim, stored lowercased when present

        Returns:
            User object
        """
        user = await self.get_user_by_id(user_id)
        if user:
            if email and user.email != email.lower():
                user.email = email.lower()
                await self.db.flush()
            return user

        user = User(id=user_id, email=email.lower() if email else None, preferences={})
        try:
            async with self.db.begin_nested():
                self.db.add(user)
        except IntegrityError:
            # Another request created the profile first
            return await self.get_user_by_id(user_id)
        await self.db.refresh(user)
        return user

    async def update_user(self, user: User, updates: dict) -> User:
        """
        Update profile fields.

        Args:
            user: User object to update
            updates: Dictionary of fields to update (e.g., {"full_name": "Ada"})

        Returns:
            Updated User object
        """
        for key, value in updates.items():
            if key == "preferences" and value is not None:
                value = {**(user.preferences or {}), **value}
            if hasattr(user, key):
                setattr(user, key, value)

        await self.db.flush()
        await self.db.refresh(user)
        return user

    async def soft_delete_user(self, user: User) -> User:
        user.deleted_at = utcnow()
        await self.db.flush()
        return user
