from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

DELETED_PLACEHOLDER = "This message was deleted"
SYSTEM_SENDER = "system"

KIND_GROUP = "group"
KIND_PRIVATE = "private"
KIND_SYSTEM = "system"


def conversation_key(user_a: str, user_b: str) -> str:
    """Canonical log key for a private chat.

    Both participants resolve to the same key regardless of who asks.
    """
    return "_".join(sorted((user_a, user_b)))


@dataclass
class User:
    """Represents a user known to this chat instance.
    
    Attributes:
        id (str): Stable unique identifier for the user
        display_name (str): Name shown to others, unique among online users
        instance_id (str): Instance the user registered on
        connection_id (Optional[str]): Bound connection while online
        group_ids (List[str]): IDs of groups the user belongs to
        online (bool): True while a connection is bound
        last_seen (int): Unix timestamp in milliseconds of the last presence change
    """
    id: str
    display_name: str
    instance_id: str
    connection_id: Optional[str] = None
    group_ids: List[str] = field(default_factory=list)
    online: bool = False
    last_seen: int = 0

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "username": self.display_name,
            "instanceId": self.instance_id,
            "groups": list(self.group_ids),
            "isOnline": self.online,
            "lastSeen": self.last_seen,
        }


@dataclass
class Group:
    """Represents a chat group.
    
    Attributes:
        id (str): Unique group identifier
        name (str): Group name, unique case-insensitively among live groups
        creator_id (str): User ID of the group creator
        member_ids (Set[str]): Set of user IDs who are members of this group
        created_ts (int): Unix timestamp in milliseconds when group was created
        description (Optional[str]): Free text shown alongside the name
    """
    id: str
    name: str
    creator_id: str
    member_ids: Set[str]
    created_ts: int
    description: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "creator": self.creator_id,
            "members": sorted(self.member_ids),
            "createdAt": self.created_ts,
        }


@dataclass
class RepliedMessage:
    """Display snapshot of the message a reply points at."""
    id: str
    sender_id: str
    content: str
    sent_ts: int
    sender_name: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "sender": self.sender_id,
            "senderName": self.sender_name,
            "content": self.content,
            "timestamp": self.sent_ts,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> Optional["RepliedMessage"]:
        if not isinstance(data, dict) or not data.get("id"):
            return None
        return cls(
            id=str(data["id"]),
            sender_id=str(data.get("sender", "")),
            content=str(data.get("content", "")),
            sent_ts=int(data.get("timestamp") or 0),
            sender_name=data.get("senderName"),
        )


@dataclass
class Message:
    """Represents a chat message in a conversation log.
    
    A message is a group message, a private (direct) message between two
    users, or a system notice posted into a group log.
    
    Attributes:
        message_id (str): Unique identifier for the message
        kind (str): One of 'group', 'private' or 'system'
        sender_id (str): ID of the sending user, or 'system'
        recipient_id (str): Group ID, or the other party's user ID for private messages
        content (str): Text of the message
        sent_ts (int): Unix timestamp in milliseconds when message was accepted
        attachments (List[str]): Attachment references
        delivered (bool): True once a live push reached a recipient
        read (bool): True once a recipient marked the conversation read
        reply_to (Optional[str]): ID of the message being replied to
        replied_message (Optional[RepliedMessage]): Snapshot of that message
        deleted_for_everyone (bool): Content was replaced for all participants
        deleted_by (Optional[str]): User who deleted the message for everyone
        deleted_for (Set[str]): Users who deleted the message for themselves only
        edited (bool): Content was changed after sending
        edited_at (Optional[int]): Timestamp of the last edit
        delivered_to (Set[str]): Users who received the live push
        read_by (Set[str]): Users who marked the message read
    """
    message_id: str
    kind: str
    sender_id: str
    recipient_id: str
    content: str
    sent_ts: int
    attachments: List[str] = field(default_factory=list)
    delivered: bool = False
    read: bool = False
    reply_to: Optional[str] = None
    replied_message: Optional[RepliedMessage] = None
    deleted_for_everyone: bool = False
    deleted_by: Optional[str] = None
    deleted_for: Set[str] = field(default_factory=set)
    edited: bool = False
    edited_at: Optional[int] = None
    delivered_to: Set[str] = field(default_factory=set)
    read_by: Set[str] = field(default_factory=set)

    @property
    def is_group_message(self) -> bool:
        return self.kind in (KIND_GROUP, KIND_SYSTEM)

    def to_dict(self, viewer_id: Optional[str] = None, **extra) -> Dict:
        """Wire form of the message as seen by viewer_id.

        A viewer who deleted the message for themselves gets the
        placeholder; every other participant sees the stored record.
        """
        hidden = viewer_id is not None and viewer_id in self.deleted_for
        rec = {
            "id": self.message_id,
            "type": self.kind,
            "sender": self.sender_id,
            "recipient": self.recipient_id,
            "content": DELETED_PLACEHOLDER if hidden else self.content,
            "attachments": [] if hidden else list(self.attachments),
            "timestamp": self.sent_ts,
            "delivered": self.delivered,
            "read": self.read,
        }
        if self.reply_to:
            rec["replyTo"] = self.reply_to
        if self.replied_message is not None:
            rec["repliedMessage"] = self.replied_message.to_dict()
        if self.deleted_for_everyone:
            rec["deletedForEveryone"] = True
            rec["deletedBy"] = self.deleted_by
        elif hidden:
            rec["deletedForMe"] = True
            rec["deletedBy"] = viewer_id
        if self.edited:
            rec["edited"] = True
            rec["editedAt"] = self.edited_at
        rec.update(extra)
        return rec


@dataclass
class TypingStatus:
    """Active typing entry of one user.

    chat_id is the group ID, or the other party's user ID for private chats.
    started_at is a monotonic clock reading in seconds.
    """
    chat_id: str
    is_private: bool
    started_at: float
