"""
User and role repository.

Candidate selection for the batch jobs uses keyset pagination on the
primary key so chunks stay stable while earlier chunks are being written.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from src.models.role import Role, UserRoleAssignment
from src.models.user import User

logger = logging.getLogger(__name__)


class UserRepository:
    """Repository for user lookups, job candidate chunks and role rows."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_by_id(self, user_id: str, include_deleted: bool = False) -> Optional[User]:
        """
        Get user by ID.

        Args:
            user_id: User ID
            include_deleted: Whether tombstoned users are returned

        Returns:
            User if found, None otherwise
        """
        query = self.db.query(User).filter(User.id == user_id)
        if not include_deleted:
            query = query.filter(User.is_deleted.is_(False))
        return query.first()

    def get_by_remote_customer_id(self, customer_id: str) -> Optional[User]:
        if not customer_id:
            return None
        return self.db.query(User).filter(
            User.remote_customer_id == customer_id,
            User.is_deleted.is_(False)
        ).first()

    def lock_for_update(self, user_id: str) -> Optional[User]:
        """
        Re-read a user row with SELECT ... FOR UPDATE.

        The lock is held until the surrounding transaction ends.
        """
        return self.db.query(User).filter(
            User.id == user_id
        ).populate_existing().with_for_update().first()

    def get_sync_candidates(
        self,
        limit: int,
        after_id: Optional[str] = None,
        window_start: Optional[datetime] = None,
        user_id: Optional[str] = None,
    ) -> List[User]:
        """
        Next chunk of users eligible for population sync.

        Args:
            limit: Chunk size
            after_id: Last user ID of the previous chunk
            window_start: Only users touched or synced since then (or never
                synced); None disables the window
            user_id: Restrict to a single user

        Returns:
            Users ordered by ID
        """
        query = self.db.query(User).filter(
            User.is_deleted.is_(False),
            User.remote_customer_id.isnot(None),
            User.remote_customer_id != ""
        )

        if user_id:
            query = query.filter(User.id == user_id)

        if window_start is not None:
            query = query.filter(or_(
                User.updated_at >= window_start,
                User.last_sync_at.is_(None),
                User.last_sync_at >= window_start,
            ))

        if after_id is not None:
            query = query.filter(User.id > after_id)

        return query.order_by(User.id).limit(limit).all()

    def get_expired_trial_users(
        self,
        as_of: datetime,
        limit: int,
        after_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[User]:
        """
        Next chunk of users whose local trial ended at or before as_of.

        Returns:
            Users ordered by ID
        """
        query = self.db.query(User).filter(
            User.is_deleted.is_(False),
            User.trial_ends_at.isnot(None),
            User.trial_ends_at <= as_of
        )

        if user_id:
            query = query.filter(User.id == user_id)

        if after_id is not None:
            query = query.filter(User.id > after_id)

        return query.order_by(User.id).limit(limit).all()

    def get_role_names(self, user_id: str) -> List[str]:
        """Role names currently assigned to a user, sorted."""
        rows = self.db.query(Role.name).join(
            UserRoleAssignment, UserRoleAssignment.role_id == Role.id
        ).filter(
            UserRoleAssignment.user_id == user_id
        ).all()
        return sorted(name for (name,) in rows)

    def get_or_create_role(self, name: str) -> Role:
        """Fetch a role row, creating it on first use."""
        role = self.db.query(Role).filter(Role.name == name).first()
        if role is None:
            role = Role(name=name)
            self.db.add(role)
            self.db.flush()
            logger.info("Role created", extra={"role": name})
        return role

    def add_role(self, user: User, role: Role, source: str, now: datetime) -> UserRoleAssignment:
        assignment = UserRoleAssignment(
            user_id=user.id,
            role=role,
            source=source,
            assigned_at=now,
        )
        user.role_assignments.append(assignment)
        return assignment

    def remove_role(self, user: User, role_name: str) -> bool:
        for assignment in list(user.role_assignments):
            if assignment.role.name == role_name:
                user.role_assignments.remove(assignment)
                return True
        return False
