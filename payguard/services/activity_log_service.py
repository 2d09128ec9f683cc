"""
PayGuard - Activity Log Service

Records and lists user and system actions. Entries are added to the
caller's session and persist with the caller's next commit, so an action
and its log entry commit or roll back together.
"""

import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payguard.models.activity import ActivityAction, ActivityEntityType, ActivityLog, ActivityStatus


class ActivityLogService:
    """Service for the activity trail."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def record(
        self,
        action: ActivityAction,
        entity_type: ActivityEntityType,
        entity_id: str,
        actor_id: Optional[uuid.UUID] = None,
        details: Optional[Dict[str, Any]] = None,
        status: ActivityStatus = ActivityStatus.SUCCESS,
        error_message: Optional[str] = None,
    ) -> ActivityLog:
        """
        Stage an activity entry.

        Args:
            action: What happened
            entity_type: Kind of entity acted on
            entity_id: Batch id, identity hash or transaction hash
            actor_id: User who acted; None for system actions
            details: JSON-safe context for the entry
            status: Outcome of the action
            error_message: Failure reason when status is FAILED

        Returns:
            The pending ActivityLog row
        """
        entry = ActivityLog(
            id=uuid.uuid4(),
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            status=status,
            details=details or {},
            error_message=error_message,
        )
        self.db.add(entry)
        return entry

    async def list_activity(
        self,
        entity_type: Optional[ActivityEntityType] = None,
        entity_id: Optional[str] = None,
        action: Optional[ActivityAction] = None,
        actor_id: Optional[uuid.UUID] = None,
        limit: int = 100,
    ) -> List[ActivityLog]:
        """Entries matching the filters, newest first."""
        query = select(ActivityLog)
        if entity_type is not None:
            query = query.where(ActivityLog.entity_type == entity_type)
        if entity_id is not None:
            query = query.where(ActivityLog.entity_id == entity_id)
        if action is not None:
            query = query.where(ActivityLog.action == action)
        if actor_id is not None:
            query = query.where(ActivityLog.actor_id == actor_id)
        query = query.order_by(ActivityLog.created_at.desc()).limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())
