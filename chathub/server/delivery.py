from typing import Iterable, List, Optional, Set
from .hub import Hub
from .models import Group, Message, User, SYSTEM_SENDER
from .repo import UsersRepo
from ..utils.logger import setup_logger

logger = setup_logger('chathub.delivery')


class DeliveryEngine:
    """Fans messages and notices out to the connections of this instance.
    
    Two explicit capabilities are offered: broadcast to every open
    connection, and push to the connection bound to a specific user.
    Delivery is a one-shot push; users who are not connected are skipped
    and read the message from its log later.
    """

    def __init__(self, hub: Hub, users_repo: UsersRepo):
        self.hub = hub
        self.users = users_repo

    async def broadcast(self, event: str, data) -> int:
        return await self.hub.broadcast(event, data)

    async def push_to_user(self, user_id: str, event: str, data) -> bool:
        """Push an event to a user if they are online on this instance."""
        user = self.users.get(user_id)
        if user is None or not user.online or user.instance_id != self.users.instance_id:
            return False
        return await self.hub.send(self.users.connection_for(user_id), event, data)

    async def push_to_members(self, member_ids: Iterable[str], event: str, data, exclude: Optional[str] = None) -> List[str]:
        """Push the same event to several users; returns those reached."""
        reached = []
        for member_id in sorted(member_ids):
            if member_id == exclude:
                continue
            if await self.push_to_user(member_id, event, data):
                reached.append(member_id)
        return reached

    async def deliver_to_group(self, group: Group, message: Message, sender: Optional[User] = None) -> Set[str]:
        """Fan a group message out to the online members of the group.
        
        Every reached member other than the sender gets the message and
        produces a 'message:delivered' acknowledgement to the sender; the
        sender gets an echo of their own message.
        
        Args:
            group (Group): Target group
            message (Message): Message already appended to the group log
            sender (Optional[User]): Sending user, None for system notices
            
        Returns:
            Set[str]: IDs of members (sender excluded) the message reached
        """
        sender_id = sender.id if sender else SYSTEM_SENDER
        sender_name = sender.display_name if sender else "System"
        delivered_to = set()
        for member_id in sorted(group.member_ids):
            if member_id == sender_id:
                continue
            payload = message.to_dict(viewer_id=member_id, senderName=sender_name, groupName=group.name)
            delivered = await self.push_to_user(member_id, "message:received", payload)
            logger.debug(f"Group message {message.message_id} to '{member_id}' status: {'delivered' if delivered else 'skipped'}")
            if delivered:
                delivered_to.add(member_id)
                if sender is not None:
                    await self.push_to_user(sender_id, "message:delivered", {
                        "messageId": message.message_id,
                        "recipientId": member_id,
                    })

        message.delivered_to.update(delivered_to)
        message.delivered = message.delivered or bool(delivered_to)

        if sender is not None:
            await self.push_to_user(sender_id, "message:received", message.to_dict(
                viewer_id=sender_id, senderName=sender_name, groupName=group.name, isOwnMessage=True))
        logger.info(f"Group message {message.message_id} delivered to {len(delivered_to)}/{max(len(group.member_ids) - 1, 0)} members of {group.name}")
        return delivered_to

    async def deliver_to_user(self, recipient: User, message: Message, sender: User) -> bool:
        """Deliver a private message and echo it to the sender.
        
        Returns:
            bool: True only if the recipient is online on this instance and was reached
        """
        delivered = False
        if recipient.online and recipient.instance_id == self.users.instance_id:
            delivered = await self.push_to_user(recipient.id, "message:received", message.to_dict(
                viewer_id=recipient.id, senderName=sender.display_name, isPrivate=True))
        if delivered:
            message.delivered_to.add(recipient.id)
            await self.push_to_user(sender.id, "message:delivered", {
                "messageId": message.message_id,
                "recipientId": recipient.id,
            })
        message.delivered = delivered

        await self.push_to_user(sender.id, "message:received", message.to_dict(
            viewer_id=sender.id, senderName=sender.display_name, isPrivate=True, isOwnMessage=True))
        logger.info(f"Private message {message.message_id} to {recipient.id} status: {'delivered' if delivered else 'stored'}")
        return delivered
