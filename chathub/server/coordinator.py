import asyncio, contextlib, enum, functools, time, uuid
from typing import Callable, Dict, List, Optional
from .delivery import DeliveryEngine
from .errors import ChatError, Unauthenticated, NotFound, NotMember, EmptyContent, DifferentInstance
from .hub import Hub
from .models import (
    Group, Message, RepliedMessage, TypingStatus, User, conversation_key,
    KIND_GROUP, KIND_PRIVATE, KIND_SYSTEM, SYSTEM_SENDER,
)
from .repo import UsersRepo, GroupsRepo, MessagesRepo, now_ms
from .typing_status import TypingIndicators
from ..utils.config import ServerConfig
from ..utils.logger import setup_logger

logger = setup_logger('chathub.coordinator')


class SessionState(enum.Enum):
    ANONYMOUS = "anonymous"
    IDENTIFIED = "identified"
    DISCONNECTED = "disconnected"


class Session:
    """One connection's view of the engine: which user, if any, it speaks for."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        self.state = SessionState.ANONYMOUS
        self.user_id: Optional[str] = None
        self.queue: Optional[asyncio.Queue] = None

    def identify(self, user_id: str):
        self.user_id = user_id
        self.state = SessionState.IDENTIFIED

    def close(self):
        self.user_id = None
        self.state = SessionState.DISCONNECTED

    def __repr__(self):
        return f"Session({self.connection_id}, {self.state.value}, user={self.user_id})"


def event_handler(func):
    """Run a coordinator operation under the instance lock.

    A ChatError raised by the operation becomes a negative
    acknowledgement instead of propagating to the transport.
    """
    @functools.wraps(func)
    async def wrapper(self, session: Session, *args, **kwargs):
        async with self._lock:
            try:
                return await func(self, session, *args, **kwargs)
            except ChatError as e:
                logger.warning(f"{func.__name__} rejected for {session}: {e.message}")
                return e.to_response()
    return wrapper


class ChatCoordinator:
    """Session coordinator for one chat instance.

    Owns the users, groups, conversation logs and typing table of the
    instance and is the only component that mutates them. Inbound events
    are processed one at a time under a single asyncio lock, so appends to
    a conversation are applied in the order their events were accepted.

    Every operation returns a response dict: {"success": True, ...payload}
    or {"success": False, "error": <message>, "code": <reason>}.
    """

    def __init__(
        self,
        instance_id: str = "server1",
        hub: Optional[Hub] = None,
        clock: Callable[[], int] = now_ms,
        typing_window: float = 3.0,
        typing_stale_after: float = 10.0,
        typing_sweep_interval: float = 60.0,
        default_history_page: int = 20,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """Initialize the coordinator and its components.

        Args:
            instance_id (str): Label of this instance
            hub (Optional[Hub]): Connection hub; a new one is created if omitted
            clock (Callable[[], int]): Wall clock in milliseconds for timestamps
            typing_window (float): Seconds before a typing entry expires on its own
            typing_stale_after (float): Age in seconds after which the sweep purges an entry
            typing_sweep_interval (float): Seconds between sweeps
            default_history_page (int): Page size for scroll-back without a limit
            monotonic (Callable[[], float]): Clock used for typing entry ages
        """
        self.instance_id = instance_id
        self.clock = clock
        self.hub = hub or Hub()
        self.users = UsersRepo(instance_id, clock=clock)
        self.messages = MessagesRepo()
        self.groups = GroupsRepo(self.users, self.messages, clock=clock)
        self.delivery = DeliveryEngine(self.hub, self.users)
        self.typing = TypingIndicators(window=typing_window, stale_after=typing_stale_after, clock=monotonic)
        self.typing_sweep_interval = typing_sweep_interval
        self.default_history_page = default_history_page
        self.sessions: Dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config: ServerConfig, hub: Optional[Hub] = None) -> "ChatCoordinator":
        return cls(
            instance_id=config.instance_id,
            hub=hub,
            typing_window=config.typing_window,
            typing_stale_after=config.typing_stale_after,
            typing_sweep_interval=config.typing_sweep_interval,
            default_history_page=config.default_history_page,
        )

    def seed_groups(self, groups) -> List[Group]:
        """Create memberless groups owned by 'system' from (name, description) pairs."""
        created = []
        for name, description in groups:
            if self.groups.find_by_name(name) is None:
                created.append(self.groups.create(name, description, SYSTEM_SENDER, add_creator=False))
        return created

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start the periodic typing sweep. Needs a running event loop."""
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_forever())
            logger.info(f"Instance {self.instance_id} started (typing sweep every {self.typing_sweep_interval}s)")

    async def close(self):
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        self.typing.clear()

    async def _sweep_forever(self):
        while True:
            await asyncio.sleep(self.typing_sweep_interval)
            try:
                await self.sweep_typing()
            except Exception as e:
                logger.error(f"Typing sweep failed: {e}")

    async def open_session(self, connection_id: Optional[str] = None) -> Session:
        """Register a new connection and greet it with 'server:info'."""
        session = Session(connection_id or uuid.uuid4().hex)
        session.queue = await self.hub.register_queue(session.connection_id)
        async with self._lock:
            self.sessions[session.connection_id] = session
            await self.hub.send(session.connection_id, "server:info", {
                "serverId": self.instance_id,
                "users": [u.to_dict() for u in self.users.list_online()],
                "groups": [g.to_dict() for g in self.groups.all()],
                "timestamp": self.clock(),
            })
        logger.info(f"Connection {session.connection_id} opened on {self.instance_id}")
        return session

    async def close_session(self, session: Session):
        """Transport loss: disconnect the session and drop its queue."""
        await self.disconnect(session)
        await self.hub.remove_queue(session.connection_id)
        self.sessions.pop(session.connection_id, None)
        logger.info(f"Connection {session.connection_id} closed")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_user(self, session: Session) -> User:
        if session.state != SessionState.IDENTIFIED or session.user_id is None:
            raise Unauthenticated()
        user = self.users.get(session.user_id)
        if user is None:
            raise Unauthenticated()
        return user

    def _chat_key(self, user_id: str, chat_id: str, is_private: bool) -> str:
        return conversation_key(user_id, chat_id) if is_private else chat_id

    def _new_message(self, kind: str, sender_id: str, recipient_id: str, content: str, **fields) -> Message:
        return Message(
            message_id=uuid.uuid4().hex,
            kind=kind,
            sender_id=sender_id,
            recipient_id=recipient_id,
            content=content,
            sent_ts=self.clock(),
            **fields,
        )

    def _reply_snapshot(self, key: str, reply_to: Optional[str], replied: Optional[dict]) -> Optional[RepliedMessage]:
        if not reply_to:
            return None
        try:
            original = self.messages.find(key, reply_to)
        except NotFound:
            return RepliedMessage.from_dict(replied) if replied else None
        sender = self.users.get(original.sender_id)
        return RepliedMessage(
            id=original.message_id,
            sender_id=original.sender_id,
            content=original.content,
            sent_ts=original.sent_ts,
            sender_name=sender.display_name if sender else "System",
        )

    async def _release(self, session: Session) -> Optional[User]:
        """Take the session's user offline and tell everyone."""
        user_id = session.user_id
        if user_id is None:
            return None
        status = self.typing.stop(user_id)
        if status is not None:
            await self._announce_typing(user_id, status.chat_id, status.is_private, False)
        user = self.users.disconnect(user_id, session.connection_id)
        if user is not None:
            await self.delivery.broadcast("user:left", {
                "id": user.id,
                "username": user.display_name,
                "instanceId": user.instance_id,
            })
        return user

    async def _system_notice(self, group: Group, content: str) -> Message:
        notice = self._new_message(KIND_SYSTEM, SYSTEM_SENDER, group.id, content, delivered=True)
        self.messages.append(group.id, notice)
        await self.delivery.deliver_to_group(group, notice)
        return notice

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    @event_handler
    async def join(self, session: Session, username: str) -> dict:
        """user:join - register (or reactivate) a user under a display name."""
        if session.state == SessionState.DISCONNECTED:
            raise Unauthenticated("Connection closed")
        if session.state == SessionState.IDENTIFIED:
            await self._release(session)

        user, reactivated = self.users.register(username, session.connection_id)
        session.identify(user.id)

        await self.delivery.broadcast("user:joined", dict(user.to_dict(), action="reconnected" if reactivated else "joined"))
        online = [u.to_dict() for u in self.users.list_online(excluding=user.id)]
        groups = [g.to_dict() for g in self.groups.all()]
        await self.hub.send(session.connection_id, "users:list", online)
        await self.hub.send(session.connection_id, "groups:list", groups)
        await self.hub.send(session.connection_id, "user:registered", user.to_dict())
        return {"success": True, "user": user.to_dict(), "users": online, "groups": groups}

    @event_handler
    async def reconnect(self, session: Session, user_id: str) -> dict:
        """user:reconnect - rebind a known user ID to this connection."""
        if session.state == SessionState.DISCONNECTED:
            raise Unauthenticated("Connection closed")
        if session.state == SessionState.IDENTIFIED and session.user_id != user_id:
            await self._release(session)

        user = self.users.reconnect(user_id, session.connection_id)
        session.identify(user.id)

        await self.delivery.broadcast("user:reconnected", user.to_dict())
        await self.hub.send(session.connection_id, "users:list", [u.to_dict() for u in self.users.list_online(excluding=user.id)])
        await self.hub.send(session.connection_id, "groups:list", [g.to_dict() for g in self.groups.all()])
        return {"success": True, "user": user.to_dict()}

    @event_handler
    async def disconnect(self, session: Session) -> dict:
        """user:leave or transport loss. Idempotent."""
        if session.state == SessionState.IDENTIFIED:
            await self._release(session)
        session.close()
        return {"success": True}

    @event_handler
    async def get_users(self, session: Session) -> dict:
        """users:get - online users of this instance other than the caller."""
        user = self._require_user(session)
        return {"success": True, "users": [u.to_dict() for u in self.users.list_online(excluding=user.id)]}

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    @event_handler
    async def get_groups(self, session: Session) -> dict:
        self._require_user(session)
        return {"success": True, "groups": [g.to_dict() for g in self.groups.all()]}

    @event_handler
    async def create_group(self, session: Session, name: str, description: Optional[str] = None) -> dict:
        """group:create - the creator becomes the first member."""
        user = self._require_user(session)
        group = self.groups.create(name, description, user.id)
        await self.delivery.broadcast("group:created", group.to_dict())
        return {"success": True, "group": group.to_dict()}

    @event_handler
    async def join_group(self, session: Session, group_id: str) -> dict:
        user = self._require_user(session)
        group = self.groups.join(group_id, user.id)

        member = {"id": user.id, "username": user.display_name}
        await self.delivery.push_to_members(group.member_ids, "group:memberJoined", {"groupId": group.id, "user": member}, exclude=user.id)
        await self._system_notice(group, f"{user.display_name} joined the group")

        await self.delivery.broadcast("group:updated", group.to_dict())
        await self.hub.send(session.connection_id, "group:joined", group.to_dict())
        return {"success": True, "group": group.to_dict()}

    @event_handler
    async def leave_group(self, session: Session, group_id: str) -> dict:
        """group:leave - an emptied group is deleted along with its log."""
        user = self._require_user(session)
        group, removed = self.groups.leave(group_id, user.id)
        content = f"{user.display_name} left the group"

        if removed:
            notice = self._new_message(KIND_SYSTEM, SYSTEM_SENDER, group.id, content, delivered=True)
        else:
            member = {"id": user.id, "username": user.display_name}
            await self.delivery.push_to_members(group.member_ids, "group:memberLeft", {"groupId": group.id, "user": member})
            notice = await self._system_notice(group, content)
        await self.hub.send(session.connection_id, "message:received", notice.to_dict(senderName="System", groupName=group.name))

        await self.delivery.broadcast("group:updated", group.to_dict())
        await self.hub.send(session.connection_id, "group:left", group.id)
        if removed:
            await self.delivery.broadcast("group:deleted", group.id)
        return {"success": True, "group": group.to_dict(), "deleted": removed}

    @event_handler
    async def delete_group(self, session: Session, group_id: str) -> dict:
        """group:delete - creator only; every connection hears 'group:deleted'."""
        user = self._require_user(session)
        group, former = self.groups.delete(group_id, user.id)
        await self.delivery.broadcast("group:deleted", group.id)
        return {"success": True, "groupId": group.id, "formerMembers": former}

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    @event_handler
    async def send_group_message(self, session: Session, group_id: str, content: str,
                                 attachments: Optional[List[str]] = None,
                                 reply_to: Optional[str] = None, replied_message: Optional[dict] = None) -> dict:
        """message:group - append to the group log and fan out to online members."""
        user = self._require_user(session)
        group = self.groups.get(group_id)
        if group is None:
            raise NotFound("User or group not found")
        if not self.groups.is_member(group.id, user.id):
            raise NotMember("Not a member of this group")
        text = content.strip() if isinstance(content, str) else ""
        if not text:
            raise EmptyContent()

        message = self._new_message(
            KIND_GROUP, user.id, group.id, text,
            attachments=list(attachments or []),
            reply_to=reply_to or None,
            replied_message=self._reply_snapshot(group.id, reply_to, replied_message),
        )
        self.messages.append(group.id, message)
        delivered_to = await self.delivery.deliver_to_group(group, message, user)
        return {
            "success": True,
            "message": message.to_dict(viewer_id=user.id),
            "deliveredTo": sorted(delivered_to),
            "deliveredCount": len(delivered_to),
        }

    @event_handler
    async def send_private_message(self, session: Session, recipient_id: str, content: str,
                                   attachments: Optional[List[str]] = None,
                                   reply_to: Optional[str] = None, replied_message: Optional[dict] = None) -> dict:
        """message:private - append to the pairwise log and push to the recipient if online."""
        sender = self._require_user(session)
        recipient = self.users.get(recipient_id)
        if recipient is None:
            raise NotFound("User not found")
        if recipient.instance_id != sender.instance_id:
            raise DifferentInstance()
        text = content.strip() if isinstance(content, str) else ""
        if not text:
            raise EmptyContent()

        key = conversation_key(sender.id, recipient.id)
        message = self._new_message(
            KIND_PRIVATE, sender.id, recipient.id, text,
            attachments=list(attachments or []),
            reply_to=reply_to or None,
            replied_message=self._reply_snapshot(key, reply_to, replied_message),
        )
        self.messages.append(key, message)
        delivered = await self.delivery.deliver_to_user(recipient, message, sender)
        return {
            "success": True,
            "message": message.to_dict(viewer_id=sender.id),
            "delivered": delivered,
            "recipientOnline": recipient.online,
        }

    @event_handler
    async def get_messages(self, session: Session, chat_id: str, is_private: bool, limit: Optional[int] = None) -> dict:
        """messages:get - the most recent `limit` messages of a chat."""
        user = self._require_user(session)
        key = self._chat_key(user.id, chat_id, is_private)
        return {"success": True, "messages": [m.to_dict(viewer_id=user.id) for m in self.messages.read(key, limit)]}

    @event_handler
    async def get_more_messages(self, session: Session, chat_id: str, is_private: bool, before: int,
                                limit: Optional[int] = None) -> dict:
        """messages:more - scroll back from a timestamp."""
        user = self._require_user(session)
        key = self._chat_key(user.id, chat_id, is_private)
        page = self.messages.read_before(key, before, limit or self.default_history_page)
        return {"success": True, "messages": [m.to_dict(viewer_id=user.id) for m in page]}

    @event_handler
    async def mark_read(self, session: Session, chat_id: str, is_private: bool) -> dict:
        """message:read - mark a chat read and signal the senders that are connected."""
        user = self._require_user(session)
        key = self._chat_key(user.id, chat_id, is_private)
        newly_read = self.messages.mark_read(key, user.id)
        for msg in newly_read:
            if msg.sender_id != SYSTEM_SENDER:
                await self.delivery.push_to_user(msg.sender_id, "message:read", {
                    "messageId": msg.message_id,
                    "readerId": user.id,
                })
        return {"success": True, "count": len(newly_read)}

    async def _notify_chat(self, user: User, chat_id: str, is_private: bool, event: str, payload: dict):
        """Push a message-level change to the other side of a chat and to the actor."""
        if is_private:
            await self.delivery.push_to_user(chat_id, event, dict(payload, chatId=user.id, isPrivate=True))
        else:
            group = self.groups.get(chat_id)
            if group is not None:
                await self.delivery.push_to_members(group.member_ids, event, dict(payload, chatId=chat_id, isPrivate=False), exclude=user.id)
        await self.delivery.push_to_user(user.id, event, dict(payload, chatId=chat_id, isPrivate=is_private))

    @event_handler
    async def delete_message(self, session: Session, message_id: str, chat_id: str, is_private: bool,
                             for_everyone: bool = False) -> dict:
        """message:delete - soft delete for everyone (sender only) or for the requester."""
        user = self._require_user(session)
        key = self._chat_key(user.id, chat_id, is_private)
        msg = self.messages.soft_delete(key, message_id, user.id, for_everyone)
        payload = {"messageId": message_id, "deleteForEveryone": for_everyone, "deletedBy": user.id}
        if for_everyone:
            await self._notify_chat(user, chat_id, is_private, "message:deleted", payload)
        else:
            await self.delivery.push_to_user(user.id, "message:deleted", dict(payload, chatId=chat_id, isPrivate=is_private))
        return {"success": True, "message": msg.to_dict(viewer_id=user.id)}

    @event_handler
    async def edit_message(self, session: Session, message_id: str, chat_id: str, is_private: bool, content: str) -> dict:
        """message:edit - sender replaces the content of their message."""
        user = self._require_user(session)
        key = self._chat_key(user.id, chat_id, is_private)
        msg = self.messages.edit(key, message_id, user.id, content, self.clock())
        await self._notify_chat(user, chat_id, is_private, "message:edited", {
            "messageId": msg.message_id,
            "content": msg.content,
            "editedAt": msg.edited_at,
        })
        return {"success": True, "message": msg.to_dict(viewer_id=user.id)}

    @event_handler
    async def delete_chat(self, session: Session, chat_id: str, is_private: bool) -> dict:
        """chat:delete - clear a whole conversation log."""
        user = self._require_user(session)
        if is_private:
            self.messages.delete_log(conversation_key(user.id, chat_id), user.id)
        else:
            group = self.groups.get(chat_id)
            if group is None:
                raise NotFound("Group not found")
            self.messages.delete_log(chat_id, user.id, group=group)
        await self.hub.send(session.connection_id, "chat:deleted", {"chatId": chat_id, "isPrivate": is_private})
        return {"success": True}

    # ------------------------------------------------------------------
    # Typing
    # ------------------------------------------------------------------

    async def _announce_typing(self, user_id: str, chat_id: str, is_private: bool, is_typing: bool):
        if is_private:
            await self.delivery.push_to_user(chat_id, "user:typing", {"userId": user_id, "isTyping": is_typing, "chatId": user_id})
            return
        group = self.groups.get(chat_id)
        if group is not None:
            await self.delivery.push_to_members(group.member_ids, "user:typing",
                                                {"userId": user_id, "isTyping": is_typing, "chatId": chat_id},
                                                exclude=user_id)

    @event_handler
    async def typing_start(self, session: Session, chat_id: str, is_private: bool) -> dict:
        user = self._require_user(session)
        status, previous = self.typing.start(user.id, chat_id, is_private, self._typing_expired)
        if previous is not None and (previous.chat_id, previous.is_private) != (chat_id, is_private):
            await self._announce_typing(user.id, previous.chat_id, previous.is_private, False)
        await self._announce_typing(user.id, chat_id, is_private, True)
        return {"success": True}

    @event_handler
    async def typing_stop(self, session: Session, chat_id: str, is_private: bool) -> dict:
        user = self._require_user(session)
        # a stop for another chat leaves the active entry to its own timer
        status = self.typing.get(user.id)
        if status is not None and (status.chat_id, status.is_private) == (chat_id, is_private):
            self.typing.stop(user.id)
        await self._announce_typing(user.id, chat_id, is_private, False)
        return {"success": True}

    async def _typing_expired(self, user_id: str, status: TypingStatus):
        async with self._lock:
            if self.typing.clear_if_current(user_id, status):
                await self._announce_typing(user_id, status.chat_id, status.is_private, False)

    async def sweep_typing(self) -> int:
        """Purge stale typing entries and announce them as stopped."""
        async with self._lock:
            stale = self.typing.sweep()
            for user_id, status in stale:
                await self._announce_typing(user_id, status.chat_id, status.is_private, False)
            return len(stale)

    # ------------------------------------------------------------------
    # Read-only accessors for the query surface
    # ------------------------------------------------------------------

    def health(self) -> dict:
        return {
            "status": "healthy",
            "serverId": self.instance_id,
            "users": len(self.users.users_by_id),
            "groups": len(self.groups.groups_by_id),
            "onlineUsers": len(self.users.list_online()),
            "timestamp": self.clock(),
        }

    def list_users(self) -> List[dict]:
        return [u.to_dict() for u in self.users.all()]

    def list_online_users(self) -> List[dict]:
        return [u.to_dict() for u in self.users.all() if u.online]

    def list_groups(self) -> List[dict]:
        return [g.to_dict() for g in self.groups.all()]

    def get_group(self, group_id: str) -> Optional[dict]:
        group = self.groups.get(group_id)
        return group.to_dict() if group else None

    def list_group_members(self, group_id: str) -> Optional[List[dict]]:
        try:
            return [u.to_dict() for u in self.groups.members(group_id)]
        except NotFound:
            return None

    def get_conversation(self, chat_id: str, limit: Optional[int] = None) -> List[dict]:
        """Messages of a log addressed by its conversation key."""
        return [m.to_dict() for m in self.messages.read(chat_id, limit)]
