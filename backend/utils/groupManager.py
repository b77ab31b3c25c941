import logging
import uuid
from typing import List, Optional, Sequence, Tuple

from models.ledger import ActivityType, Group, Member, utcNow
from utils.balanceLedger import BalanceLedger
from utils.errors import GroupNotFound, InvalidGroupRequest

# Configure module logger
logger = logging.getLogger(__name__)


class GroupManager:
    """
    Class for managing groups and their membership

    Anything that can change a group's member set goes through the ledger
    so it is serialized with balance updates.
    """

    def __init__(self, ledger: BalanceLedger):
        self.ledger = ledger
        self.store = ledger.store
        logger.debug("GroupManager initialized")

    async def createGroup(self,
                          name: str,
                          category: Optional[str] = None,
                          description: Optional[str] = None,
                          members: Sequence[Tuple[str, str]] = ()
                          ) -> Group:
        """
        Create a group with every member at a zero balance

        Args:
            name: Group name
            category: Optional free-form category, e.g. "Travel"
            description: Optional description
            members: (userId, displayName) pairs of the founding members

        Returns:
            The stored group

        Raises:
            InvalidGroupRequest: If the name is empty or a user is listed twice
        """
        if not name or not name.strip():
            raise InvalidGroupRequest("Group name is required")
        userIds = [userId for userId, _ in members]
        if len(set(userIds)) != len(userIds):
            raise InvalidGroupRequest("A user can only join a group once")

        group = Group(
            id=uuid.uuid4().hex,
            name=name.strip(),
            category=category,
            description=description,
            members=[
                Member(memberId=uuid.uuid4().hex, userId=userId, displayName=displayName)
                for userId, displayName in members
            ],
        )
        await self.store.saveGroup(group)
        logger.info(f"Created group '{group.name}' ({group.id}) with {len(group.members)} members")

        await self.ledger.activityFeed.record(
            ActivityType.GROUP_CREATED,
            group.id,
            f"Group '{group.name}' was created",
            targetId=group.id,
        )
        return group

    async def getGroup(self, groupId: str) -> Group:
        group = await self.store.loadGroup(groupId)
        if group is None:
            raise GroupNotFound(groupId)
        return group

    async def listGroups(self, userId: Optional[str] = None) -> List[Group]:
        """All groups, or only the ones a user belongs to"""
        groups = await self.store.listGroups()
        if userId is not None:
            groups = [g for g in groups if any(m.userId == userId for m in g.members)]
        logger.info(f"Retrieved {len(groups)} groups")
        return groups

    async def updateGroup(self,
                          groupId: str,
                          name: Optional[str] = None,
                          category: Optional[str] = None,
                          description: Optional[str] = None
                          ) -> Group:
        """Change a group's descriptive fields; members and balances are untouched"""
        if name is not None and not name.strip():
            raise InvalidGroupRequest("Group name cannot be empty")

        async with self.ledger.groupLock(groupId):
            group = await self.getGroup(groupId)
            changes = {"updatedAt": utcNow()}
            if name is not None:
                changes["name"] = name.strip()
            if category is not None:
                changes["category"] = category
            if description is not None:
                changes["description"] = description
            group = group.model_copy(update=changes)
            await self.store.saveGroup(group)

        logger.info(f"Updated group {groupId}")
        return group

    async def deleteGroup(self, groupId: str) -> None:
        await self.getGroup(groupId)
        await self.ledger.dropGroup(groupId)

    async def addMember(self, groupId: str, userId: str, displayName: str) -> Member:
        if not displayName or not displayName.strip():
            raise InvalidGroupRequest("Member name is required")
        return await self.ledger.addMember(groupId, userId, displayName.strip())

    async def removeMember(self, groupId: str, memberId: str) -> None:
        await self.ledger.removeMember(groupId, memberId)
