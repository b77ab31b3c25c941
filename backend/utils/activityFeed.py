import logging
import uuid
from decimal import Decimal
from typing import List, Optional

from models.ledger import Activity, ActivityType
from utils.expenseStore import ExpenseStore

# Configure module logger
logger = logging.getLogger(__name__)


class ActivityFeed:
    """Records what happened in each group, for the activity screen"""

    def __init__(self, store: ExpenseStore):
        self.store = store

    async def record(self,
                     type: ActivityType,
                     groupId: str,
                     message: str,
                     memberId: Optional[str] = None,
                     targetId: Optional[str] = None,
                     amount: Optional[Decimal] = None
                     ) -> Optional[Activity]:
        """
        Append an entry to the feed

        Called after the operation it describes has committed, so a failure
        here is logged and the operation stands.

        Returns:
            The recorded Activity, or None if it could not be stored
        """
        activity = Activity(
            id=uuid.uuid4().hex,
            type=type,
            groupId=groupId,
            memberId=memberId,
            targetId=targetId,
            message=message,
            amount=amount,
        )
        try:
            await self.store.saveActivity(activity)
        except Exception as e:
            logger.warning(f"Failed to record {type.value} activity for group {groupId}: {str(e)}")
            return None
        logger.debug(f"Recorded activity {activity.id}: {message}")
        return activity

    async def list(self, groupId: Optional[str] = None, limit: Optional[int] = None) -> List[Activity]:
        """Newest entries first, optionally for a single group"""
        activities = await self.store.listActivities(groupId)
        return activities[:limit] if limit else activities
