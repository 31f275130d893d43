import asyncio, contextlib
import grpc
from grpc import aio
from typing import AsyncIterable
from .coordinator import ChatCoordinator, Session
from .errors import BadRequest, ChatError
from ..utils import wire
from ..utils.logger import setup_logger

logger = setup_logger('chathub.server')

_CLOSED = object()

_CHAT_EVENTS = {
    "messages:get", "messages:more", "message:read", "message:delete",
    "message:edit", "chat:delete", "typing:start", "typing:stop",
}


def _field(data, key):
    """Payload value for key; bare scalars stand for the event's only argument."""
    value = data.get(key) if isinstance(data, dict) else data
    if isinstance(value, (dict, list)):
        raise BadRequest(f"{key} must be a scalar")
    return value


def _id(data, key) -> str:
    value = _field(data, key)
    if not isinstance(value, str) or not value:
        raise BadRequest(f"{key} is required")
    return value


def _payload(data) -> dict:
    if not isinstance(data, dict):
        raise BadRequest("Payload must be an object")
    return data


def _optional_int(value, name):
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise BadRequest(f"{name} must be an integer")


def _message_extras(data: dict) -> dict:
    attachments = data.get("attachments")
    if attachments is not None and not (
            isinstance(attachments, list) and all(isinstance(a, str) for a in attachments)):
        raise BadRequest("attachments must be a list of strings")
    reply_to = data.get("replyTo")
    if reply_to is not None and not isinstance(reply_to, str):
        raise BadRequest("replyTo must be a string")
    replied = data.get("repliedMessage")
    if replied is not None and not isinstance(replied, dict):
        raise BadRequest("repliedMessage must be an object")
    return {"attachments": attachments, "reply_to": reply_to, "replied_message": replied}


class ChatService:
    """gRPC transport for the chat engine.

    Maps envelopes arriving on a bidirectional stream to coordinator
    operations, answers each one with a correlated 'ack' envelope, and
    forwards the pushes queued for the connection. Read-only listings are
    exposed as unary methods.
    """

    def __init__(self, coordinator: ChatCoordinator):
        self.coordinator = coordinator

    async def dispatch(self, session: Session, event, data) -> dict:
        """Route one inbound event to the coordinator.

        Args:
            session (Session): Session of the sending connection
            event (str): Event name, e.g. 'message:group'
            data: Event payload

        Returns:
            dict: Response with a success flag and payload or error
        """
        try:
            return await self._route(session, event, data)
        except BadRequest as e:
            logger.warning(f"Malformed '{event}' from {session.connection_id}: {e.message}")
            return e.to_response()

    async def _route(self, session: Session, event, data) -> dict:
        c = self.coordinator

        if event == "user:join":
            return await c.join(session, _field(data, "username"))
        if event == "user:reconnect":
            return await c.reconnect(session, _id(data, "userId"))
        if event == "user:leave":
            return await c.disconnect(session)
        if event == "users:get":
            return await c.get_users(session)
        if event == "groups:get":
            return await c.get_groups(session)

        if event == "group:create":
            data = _payload(data)
            return await c.create_group(session, _field(data, "name"), _field(data, "description"))
        if event == "group:join":
            return await c.join_group(session, _id(data, "groupId"))
        if event == "group:leave":
            return await c.leave_group(session, _id(data, "groupId"))
        if event == "group:delete":
            return await c.delete_group(session, _id(data, "groupId"))

        if event == "message:group":
            data = _payload(data)
            return await c.send_group_message(session, _id(data, "groupId"), data.get("content"),
                                              **_message_extras(data))
        if event == "message:private":
            data = _payload(data)
            return await c.send_private_message(session, _id(data, "recipientId"), data.get("content"),
                                                **_message_extras(data))

        # the rest address a chat by chatId + isPrivate
        data = _payload(data)
        chat_id = _id(data, "chatId") if event in _CHAT_EVENTS else None
        is_private = bool(data.get("isPrivate"))

        if event == "messages:get":
            return await c.get_messages(session, chat_id, is_private,
                                        limit=_optional_int(data.get("limit"), "limit"))
        if event == "messages:more":
            before = _optional_int(data.get("before"), "before")
            if before is None:
                raise BadRequest("before is required")
            return await c.get_more_messages(session, chat_id, is_private, before,
                                             limit=_optional_int(data.get("limit"), "limit"))
        if event == "message:read":
            return await c.mark_read(session, chat_id, is_private)
        if event == "message:delete":
            return await c.delete_message(session, _id(data, "messageId"), chat_id, is_private,
                                          bool(data.get("deleteForEveryone")))
        if event == "message:edit":
            return await c.edit_message(session, _id(data, "messageId"), chat_id, is_private,
                                        data.get("content"))
        if event == "chat:delete":
            return await c.delete_chat(session, chat_id, is_private)
        if event == "typing:start":
            return await c.typing_start(session, chat_id, is_private)
        if event == "typing:stop":
            return await c.typing_stop(session, chat_id, is_private)

        raise BadRequest(f"Unknown event: {event}")

    async def OpenStream(self, request_iterator: AsyncIterable[dict], context: aio.ServicerContext):
        """Bidirectional stream carrying one connection's events and pushes.

        Protocol Flow:
        1. Server opens a session and pushes 'server:info'
        2. Client sends {"event", "data", "request_id"} envelopes
        3. Server answers each with {"event": "ack", "request_id", "data"}
           and interleaves pushes such as 'message:received'
        4. Closing the stream disconnects the session
        """
        session = await self.coordinator.open_session()
        q = session.queue

        async def handle(incoming) -> dict:
            if not isinstance(incoming, dict):
                return BadRequest("Invalid envelope: Envelope must be an object").to_response()
            if "malformed" in incoming:
                return BadRequest(f"Invalid envelope: {incoming['malformed']}").to_response()
            event = incoming.get("event")
            try:
                return await self.dispatch(session, event, incoming.get("data"))
            except Exception as e:
                logger.exception(f"'{event}' from {session.connection_id} failed: {e}")
                return ChatError("Internal server error").to_response()

        async def reader():
            try:
                async for incoming in request_iterator:
                    request_id = incoming.get("request_id") if isinstance(incoming, dict) else None
                    await q.put(wire.envelope("ack", await handle(incoming), request_id))
            except Exception as e:
                logger.warning(f"Stream of {session.connection_id} ended with error: {e}")
            finally:
                await q.put(_CLOSED)

        reader_task = asyncio.create_task(reader())
        try:
            while True:
                out_msg = await q.get()
                if out_msg is _CLOSED:
                    break
                yield out_msg
        finally:
            reader_task.cancel()
            try:
                with contextlib.suppress(asyncio.CancelledError):
                    await reader_task
            finally:
                await self.coordinator.close_session(session)

    async def Health(self, request: dict, context: aio.ServicerContext):
        return self.coordinator.health()

    async def ListUsers(self, request: dict, context: aio.ServicerContext):
        return self.coordinator.list_users()

    async def ListOnlineUsers(self, request: dict, context: aio.ServicerContext):
        return self.coordinator.list_online_users()

    async def ListGroups(self, request: dict, context: aio.ServicerContext):
        return self.coordinator.list_groups()

    async def _require_id(self, request, key: str, context: aio.ServicerContext) -> str:
        try:
            return _id(request, key)
        except BadRequest as e:
            await context.abort(grpc.StatusCode.INVALID_ARGUMENT, e.message)

    async def GetGroup(self, request: dict, context: aio.ServicerContext):
        group = self.coordinator.get_group(await self._require_id(request, "groupId", context))
        if group is None:
            await context.abort(grpc.StatusCode.NOT_FOUND, "Group not found")
        return group

    async def ListGroupMembers(self, request: dict, context: aio.ServicerContext):
        members = self.coordinator.list_group_members(await self._require_id(request, "groupId", context))
        if members is None:
            await context.abort(grpc.StatusCode.NOT_FOUND, "Group not found")
        return members

    async def GetMessages(self, request: dict, context: aio.ServicerContext):
        chat_id = await self._require_id(request, "chatId", context)
        try:
            limit = _optional_int(request.get("limit") if isinstance(request, dict) else None, "limit")
        except BadRequest as e:
            await context.abort(grpc.StatusCode.INVALID_ARGUMENT, e.message)
        return self.coordinator.get_conversation(chat_id, limit)

    def generic_handler(self) -> grpc.GenericRpcHandler:
        """Method table for the server, with JSON (de)serializers."""
        handlers = {
            wire.OPEN_STREAM: grpc.stream_stream_rpc_method_handler(
                self.OpenStream,
                request_deserializer=wire.decode,
                response_serializer=wire.encode,
            ),
        }
        for name in wire.UNARY_METHODS:
            handlers[name] = grpc.unary_unary_rpc_method_handler(
                getattr(self, name),
                request_deserializer=wire.decode,
                response_serializer=wire.encode,
            )
        return grpc.method_handlers_generic_handler(wire.SERVICE_NAME, handlers)
