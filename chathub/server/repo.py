import time, uuid
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from .models import User, Message, Group, KIND_PRIVATE, DELETED_PLACEHOLDER
from .errors import NotFound, NameRequired, NameTaken, AlreadyMember, NotMember, NotCreator, Forbidden, EmptyContent
from ..utils.logger import setup_logger

logger = setup_logger('chathub.repo')


def now_ms() -> int:
    return int(time.time() * 1000)


class UsersRepo:
    """Presence registry: users of this instance and their bound connections."""
    
    def __init__(self, instance_id: str, clock: Callable[[], int] = now_ms):
        """Initialize users repository.
        
        Args:
            instance_id (str): ID of the instance users register on
            clock (Callable[[], int]): Returns the current time in milliseconds
        """
        self.instance_id = instance_id
        self.clock = clock
        self.users_by_id: Dict[str, User] = {}
        self.connections: Dict[str, str] = {}

    def register(self, display_name: str, connection_id: str) -> Tuple[User, bool]:
        """Bring a user online under display_name.
        
        An offline user with the same name on this instance is reactivated;
        otherwise a new user is created.
        
        Args:
            display_name (str): Requested display name
            connection_id (str): Connection to bind the user to
            
        Returns:
            Tuple[User, bool]: The user, and True if an existing user was reactivated
            
        Raises:
            NameRequired: If display_name is empty or whitespace
            NameTaken: If an online user on this instance already has that name
        """
        name = display_name.strip() if isinstance(display_name, str) else ""
        if not name:
            raise NameRequired("Username is required")

        existing = self.find_by_display_name(name)
        if existing and existing.online:
            logger.warning(f"Register rejected: name '{name}' is held by online user {existing.id}")
            raise NameTaken("Username already taken")

        if existing:
            user = existing
            logger.info(f"User reactivated: {name} (ID: {user.id})")
        else:
            user = User(id=uuid.uuid4().hex[:12], display_name=name, instance_id=self.instance_id)
            self.users_by_id[user.id] = user
            logger.info(f"New user registered: {name} (ID: {user.id})")

        self._bind(user, connection_id)
        return user, existing is not None

    def reconnect(self, user_id: str, connection_id: str) -> User:
        """Bring a known user online by ID.
        
        Raises:
            NotFound: If the ID is unknown
        """
        user = self.users_by_id.get(user_id)
        if user is None:
            logger.warning(f"Reconnect rejected: unknown user {user_id}")
            raise NotFound("User not found")
        self._bind(user, connection_id)
        logger.info(f"User reconnected: {user.display_name} (ID: {user.id})")
        return user

    def _bind(self, user: User, connection_id: str):
        user.online = True
        user.connection_id = connection_id
        user.last_seen = self.clock()
        self.connections[user.id] = connection_id
        logger.debug(f"Bound user {user.id} to connection {connection_id}")

    def disconnect(self, user_id: str, connection_id: Optional[str] = None) -> Optional[User]:
        """Mark a user offline and release its connection.
        
        Idempotent. When connection_id is given, only that binding is
        released, so a stale connection closing cannot take down a newer one.
        
        Returns:
            Optional[User]: The user if it went offline now, None otherwise
        """
        user = self.users_by_id.get(user_id)
        if user is None or not user.online:
            return None
        if connection_id is not None and user.connection_id != connection_id:
            logger.debug(f"Ignoring disconnect of stale connection {connection_id} for user {user_id}")
            return None
        user.online = False
        user.connection_id = None
        user.last_seen = self.clock()
        self.connections.pop(user_id, None)
        logger.info(f"User went offline: {user.display_name} (ID: {user.id})")
        return user

    def get(self, user_id: str) -> Optional[User]:
        return self.users_by_id.get(user_id)

    def all(self) -> Iterable[User]:
        return self.users_by_id.values()

    def list_online(self, excluding: Optional[str] = None) -> List[User]:
        """Online users of this instance, optionally without one ID."""
        return [
            u for u in self.users_by_id.values()
            if u.online and u.instance_id == self.instance_id and u.id != excluding
        ]

    def connection_for(self, user_id: str) -> Optional[str]:
        return self.connections.get(user_id)

    def find_by_display_name(self, display_name: str) -> Optional[User]:
        """Find a user of this instance by display name (case sensitive)."""
        for user in self.users_by_id.values():
            if user.display_name == display_name and user.instance_id == self.instance_id:
                return user
        return None


class MessagesRepo:
    """Conversation store: one append-only log per conversation key."""
    
    def __init__(self):
        self.logs: Dict[str, List[Message]] = {}

    def append(self, key: str, m: Message):
        """Append a message to the log of key, creating the log if needed."""
        self.logs.setdefault(key, []).append(m)
        if m.is_group_message:
            logger.info(f"New {m.kind} message saved: {m.message_id} from {m.sender_id} to group {m.recipient_id}")
        else:
            logger.info(f"New direct message saved: {m.message_id} from {m.sender_id} to {m.recipient_id}")

    def has(self, key: str) -> bool:
        return key in self.logs

    def read(self, key: str, limit: Optional[int] = None) -> List[Message]:
        """Most recent `limit` messages of a log (all if no limit), oldest first."""
        messages = self.logs.get(key, [])
        if limit and limit > 0:
            return messages[-limit:]
        return list(messages)

    def read_before(self, key: str, before_ts: int, limit: int) -> List[Message]:
        """Up to `limit` most recent messages strictly older than before_ts, oldest first."""
        if limit <= 0:
            return []
        older = [m for m in self.logs.get(key, []) if m.sent_ts < before_ts]
        return older[-limit:]

    def find(self, key: str, message_id: str) -> Message:
        """Look up one message of a log.
        
        Raises:
            NotFound: If the log or the message does not exist
        """
        messages = self.logs.get(key)
        if messages is None:
            raise NotFound("Messages not found")
        for msg in messages:
            if msg.message_id == message_id:
                return msg
        raise NotFound("Message not found")

    def mark_read(self, key: str, reader_id: str) -> List[Message]:
        """Mark every message addressed to reader_id in a log as read.
        
        Private messages count when reader_id is the recipient; group and
        system messages count when reader_id is not the sender.
        
        Returns:
            List[Message]: Messages this reader had not read before
        """
        newly_read = []
        for msg in self.logs.get(key, []):
            if msg.sender_id == reader_id:
                continue
            if msg.kind == KIND_PRIVATE and msg.recipient_id != reader_id:
                continue
            if reader_id in msg.read_by:
                continue
            msg.read = True
            msg.read_by.add(reader_id)
            newly_read.append(msg)
        if newly_read:
            logger.debug(f"User {reader_id} read {len(newly_read)} messages in {key}")
        return newly_read

    def soft_delete(self, key: str, message_id: str, requester_id: str, for_everyone: bool) -> Message:
        """Delete a message without removing it from its log.
        
        For everyone: the stored content is replaced by a placeholder and
        attachments are dropped; only the sender may do this. For me: the
        requester is recorded in deleted_for and only their view changes.
        
        Raises:
            NotFound: If the log or message does not exist
            Forbidden: If a non-sender deletes for everyone
        """
        msg = self.find(key, message_id)
        if for_everyone:
            if msg.sender_id != requester_id:
                logger.warning(f"User {requester_id} tried to delete message {message_id} of {msg.sender_id} for everyone")
                raise Forbidden("Only the message sender can delete for everyone")
            msg.content = DELETED_PLACEHOLDER
            msg.attachments = []
            msg.deleted_for_everyone = True
            msg.deleted_by = requester_id
        else:
            msg.deleted_for.add(requester_id)
        logger.info(f"Message {message_id} deleted by {requester_id} (forEveryone: {for_everyone})")
        return msg

    def edit(self, key: str, message_id: str, requester_id: str, content: str, edited_ts: int) -> Message:
        """Replace the content of a message sent by requester_id.
        
        Raises:
            NotFound: If the log or message does not exist
            Forbidden: If requester_id is not the sender or the message was deleted for everyone
            EmptyContent: If content is blank
        """
        msg = self.find(key, message_id)
        if msg.sender_id != requester_id:
            raise Forbidden("Only the message sender can edit")
        if msg.deleted_for_everyone:
            raise Forbidden("Deleted messages cannot be edited")
        text = content.strip() if isinstance(content, str) else ""
        if not text:
            raise EmptyContent()
        msg.content = text
        msg.edited = True
        msg.edited_at = edited_ts
        logger.info(f"Message {message_id} edited by {requester_id}")
        return msg

    def delete_log(self, key: str, requester_id: str, group: Optional[Group] = None) -> bool:
        """Remove a whole conversation log.
        
        For a group log, pass the group: only its creator may clear it.
        Private logs may be cleared by either participant.
        
        Returns:
            bool: True if a log existed
            
        Raises:
            Forbidden: If requester_id is not the creator of the group
        """
        if group is not None and group.creator_id != requester_id:
            raise Forbidden("Only group creator can delete group chat")
        existed = self.logs.pop(key, None) is not None
        logger.info(f"Conversation {key} cleared by {requester_id}")
        return existed

    def drop(self, key: str):
        self.logs.pop(key, None)


class GroupsRepo:
    """Group directory: groups and memberships, kept in step with users' group lists."""
    
    def __init__(self, users_repo: UsersRepo, messages_repo: MessagesRepo, clock: Callable[[], int] = now_ms):
        """Initialize groups repository.
        
        Args:
            users_repo (UsersRepo): Users whose group lists mirror memberships
            messages_repo (MessagesRepo): Store holding each group's log
            clock (Callable[[], int]): Returns the current time in milliseconds
        """
        self.users = users_repo
        self.messages = messages_repo
        self.clock = clock
        self.groups_by_id: Dict[str, Group] = {}

    def find_by_name(self, name: str) -> Optional[Group]:
        """Find a live group by name (case insensitive)."""
        wanted = name.strip().lower()
        for group in self.groups_by_id.values():
            if group.name.lower() == wanted:
                return group
        return None

    def create(self, name: str, description: Optional[str], creator_id: str, add_creator: bool = True) -> Group:
        """Create a new chat group.
        
        Args:
            name (str): Group name, unique case-insensitively
            description (Optional[str]): Optional description
            creator_id (str): User ID of group creator
            add_creator (bool): Add the creator as first member
            
        Returns:
            Group: Newly created group object
            
        Raises:
            NameRequired: If name is empty or whitespace
            NameTaken: If a group with that name already exists
        """
        if not isinstance(name, str) or not name.strip():
            raise NameRequired("Group name is required")
        if self.find_by_name(name):
            logger.warning(f"Attempt to create existing group: {name}")
            raise NameTaken("Group already exists")

        group = Group(
            id=uuid.uuid4().hex,
            name=name.strip(),
            creator_id=creator_id,
            member_ids=set(),
            created_ts=self.clock(),
            description=description.strip() if description else None,
        )
        self.groups_by_id[group.id] = group
        if add_creator:
            group.member_ids.add(creator_id)
            user = self.users.get(creator_id)
            if user and group.id not in user.group_ids:
                user.group_ids.append(group.id)
        logger.info(f"New group created: {group.name} ({group.id}) by user {creator_id}")
        return group

    def join(self, group_id: str, user_id: str) -> Group:
        """Add a user to an existing group.
        
        Raises:
            NotFound: If the group or user does not exist
            AlreadyMember: If the user is already a member
        """
        group = self.groups_by_id.get(group_id)
        user = self.users.get(user_id)
        if group is None or user is None:
            logger.warning(f"Attempt to join non-existent group {group_id} by {user_id}")
            raise NotFound("User or group not found")
        if user_id in group.member_ids:
            logger.debug(f"User {user_id} already in group {group.name}")
            raise AlreadyMember("Already in group")

        group.member_ids.add(user_id)
        if group_id not in user.group_ids:
            user.group_ids.append(group_id)
        logger.info(f"Added user {user_id} to group {group.name}")
        return group

    def leave(self, group_id: str, user_id: str) -> Tuple[Group, bool]:
        """Remove a user from a group.
        
        A group left without members is removed together with its log.
        
        Returns:
            Tuple[Group, bool]: The group, and True if it was removed as empty
            
        Raises:
            NotFound: If the group or user does not exist
            NotMember: If the user is not a member
        """
        group = self.groups_by_id.get(group_id)
        user = self.users.get(user_id)
        if group is None or user is None:
            raise NotFound("User or group not found")
        if user_id not in group.member_ids:
            raise NotMember("Not in group")

        group.member_ids.discard(user_id)
        user.group_ids = [gid for gid in user.group_ids if gid != group_id]
        logger.info(f"Removed user {user_id} from group {group.name}")

        if not group.member_ids:
            self._remove(group)
            logger.info(f"Group deleted (empty): {group.name}")
            return group, True
        return group, False

    def delete(self, group_id: str, user_id: str) -> Tuple[Group, List[str]]:
        """Delete a group on behalf of its creator.
        
        Returns:
            Tuple[Group, List[str]]: The removed group and its former member IDs
            
        Raises:
            NotFound: If the group or user does not exist
            NotCreator: If user_id did not create the group
        """
        group = self.groups_by_id.get(group_id)
        if group is None or self.users.get(user_id) is None:
            raise NotFound("User or group not found")
        if group.creator_id != user_id:
            logger.warning(f"User {user_id} tried to delete group {group.name} created by {group.creator_id}")
            raise NotCreator("Only the group creator can delete the group")

        former = sorted(group.member_ids)
        for member_id in former:
            member = self.users.get(member_id)
            if member:
                member.group_ids = [gid for gid in member.group_ids if gid != group_id]
        self._remove(group)
        logger.info(f"Group deleted by {user_id}: {group.name}")
        return group, former

    def _remove(self, group: Group):
        self.groups_by_id.pop(group.id, None)
        self.messages.drop(group.id)

    def get(self, group_id: str) -> Optional[Group]:
        return self.groups_by_id.get(group_id)

    def all(self) -> List[Group]:
        return list(self.groups_by_id.values())

    def members(self, group_id: str) -> List[User]:
        """Users of a group (unknown IDs skipped).
        
        Raises:
            NotFound: If the group does not exist
        """
        group = self.groups_by_id.get(group_id)
        if group is None:
            raise NotFound("Group not found")
        return [u for u in (self.users.get(mid) for mid in sorted(group.member_ids)) if u is not None]

    def is_member(self, group_id: str, user_id: str) -> bool:
        group = self.groups_by_id.get(group_id)
        return group is not None and user_id in group.member_ids
