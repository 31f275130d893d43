import asyncio, itertools, json, re, typer
import grpc
from grpc import aio
from typing import Dict, Optional
from ..utils import wire

app = typer.Typer(help="Simple gRPC chat client")


def _unary(chan: aio.Channel, name: str):
    return chan.unary_unary(
        wire.method_path(name),
        request_serializer=wire.encode,
        response_deserializer=wire.decode,
    )


async def _query(host: str, port: int, name: str, request: Optional[dict] = None):
    async with aio.insecure_channel(f"{host}:{port}") as chan:
        return await _unary(chan, name)(request or {})


def _print_json(obj):
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def format_push(env: dict, names: Dict[str, str]) -> str:
    """Render one server envelope as a console line."""
    event, data = env.get("event"), env.get("data")
    if event == "message:received":
        who = data.get("senderName") or names.get(data.get("sender"), data.get("sender"))
        if data.get("type") == "system":
            return f"[{data.get('groupName')}] * {data.get('content')}"
        if data.get("isPrivate"):
            prefix = "[DM to]" if data.get("isOwnMessage") else "[DM]"
            return f"{prefix} {who}: {data.get('content')}"
        return f"[{data.get('groupName')}] {who}: {data.get('content')}"
    if event == "ack":
        if data.get("success"):
            return f"[ok] {env.get('request_id')}"
        return f"[error] {env.get('request_id')}: {data.get('error')}"
    if event == "user:typing":
        who = names.get(data.get("userId"), data.get("userId"))
        return f"[typing] {who} {'is typing' if data.get('isTyping') else 'stopped typing'}"
    if event in ("user:joined", "user:reconnected"):
        return f"[presence] {data.get('username')} is online"
    if event == "user:left":
        return f"[presence] {data.get('username')} went offline"
    return f"[{event}] {json.dumps(data, ensure_ascii=False)}"


async def _run(display_name: str, host: str, port: int):
    """Interactive client loop.

    Joins under display_name and turns slash commands into stream events:
    - /users, /groups: list online users and groups
    - /create <name>[: description], /join <group>, /leave <group>, /delete <group>
    - /dm @<name> <message>, /group <group>: <message>
    - /history <group> | @<name>

    Side Effects:
        - Connects to gRPC server
        - Reads standard input and prints pushes
    """
    chan = aio.insecure_channel(f"{host}:{port}")
    open_stream = chan.stream_stream(
        wire.method_path(wire.OPEN_STREAM),
        request_serializer=wire.encode,
        response_deserializer=wire.decode,
    )
    request_ids = itertools.count(1)

    if not display_name:
        display_name = input("Enter your display name: ").strip()

    # cache of id -> display name for printing
    names: Dict[str, str] = {}

    async def resolve_user(name: str) -> Optional[str]:
        users = await _unary(chan, "ListOnlineUsers")({})
        for u in users:
            names[u["id"]] = u["username"]
        exact = [u for u in users if u["username"] == name]
        if exact:
            return exact[0]["id"]
        print("[warn] No online user with that name")
        return None

    async def resolve_group(name: str) -> Optional[str]:
        groups = await _unary(chan, "ListGroups")({})
        wanted = name.strip().lstrip("#").lower()
        for g in groups:
            if g["name"].lower() == wanted or g["id"] == name.strip():
                return g["id"]
        print("[warn] No group with that name")
        return None

    def request(event: str, data=None) -> dict:
        return wire.envelope(event, data, f"r{next(request_ids)}")

    async def outgoing():
        yield request("user:join", display_name)

        loop = asyncio.get_event_loop()
        while True:
            line = (await loop.run_in_executor(None, input, "")).strip()
            if not line:
                continue

            if line == "/quit":
                yield request("user:leave")
                return

            if line == "/users":
                yield request("users:get")
                continue

            if line == "/groups":
                yield request("groups:get")
                continue

            m = re.match(r"^/create\s+([^:]+?)(?::\s*(.*))?$", line)
            if m:
                yield request("group:create", {"name": m.group(1), "description": m.group(2)})
                continue

            m = re.match(r"^/(join|leave|delete)\s+(.+)$", line)
            if m:
                group_id = await resolve_group(m.group(2))
                if group_id:
                    yield request(f"group:{m.group(1)}", group_id)
                continue

            m = re.match(r"^/dm\s+@?(\S+)\s+(.+)$", line)
            if m:
                target_id = await resolve_user(m.group(1))
                if target_id:
                    yield request("message:private", {"recipientId": target_id, "content": m.group(2)})
                continue

            m = re.match(r"^/group\s+(.+?):\s+(.+)$", line)
            if m:
                group_id = await resolve_group(m.group(1))
                if group_id:
                    yield request("message:group", {"groupId": group_id, "content": m.group(2)})
                continue

            m = re.match(r"^/history\s+(@)?(.+)$", line)
            if m:
                is_private = bool(m.group(1))
                chat_id = await (resolve_user(m.group(2)) if is_private else resolve_group(m.group(2)))
                if chat_id:
                    yield request("messages:get", {"chatId": chat_id, "isPrivate": is_private, "limit": 50})
                continue

            print("Commands:\n"
                  "  /users | /groups\n"
                  "  /create <name>[: description]\n"
                  "  /join <group> | /leave <group> | /delete <group>\n"
                  "  /dm @<display_name> <message>\n"
                  "  /group <group>: <message>\n"
                  "  /history <group> | /history @<display_name>\n"
                  "  /quit")

    call = open_stream(outgoing())
    try:
        async for env in call:
            data = env.get("data")
            if env.get("event") == "ack" and isinstance(data, dict):
                for u in data.get("users") or []:
                    names[u["id"]] = u["username"]
                if data.get("user"):
                    names[data["user"]["id"]] = data["user"]["username"]
                if "messages" in data:
                    for msg in data["messages"]:
                        who = names.get(msg["sender"], msg["sender"])
                        print(f"  {who}: {msg['content']}")
            print(format_push(env, names))
    except grpc.aio.AioRpcError as e:
        print(f"Connection closed: {e.details()}")
    finally:
        await chan.close()


@app.command("run")
def run_cmd(name: str = "", host: str = "127.0.0.1", port: int = 50051):
    """
    Run the interactive chat client.
    """
    asyncio.run(_run(name, host, port))


@app.command("health")
def health_cmd(host: str = "127.0.0.1", port: int = 50051):
    """Show instance health."""
    _print_json(asyncio.run(_query(host, port, "Health")))


@app.command("users")
def users_cmd(online: bool = False, host: str = "127.0.0.1", port: int = 50051):
    """List users (all, or only online ones)."""
    _print_json(asyncio.run(_query(host, port, "ListOnlineUsers" if online else "ListUsers")))


@app.command("groups")
def groups_cmd(host: str = "127.0.0.1", port: int = 50051):
    """List groups."""
    _print_json(asyncio.run(_query(host, port, "ListGroups")))


@app.command("history")
def history_cmd(chat_id: str, limit: int = 50, host: str = "127.0.0.1", port: int = 50051):
    """Print the messages of a conversation key (group ID or sorted user-ID pair)."""
    try:
        _print_json(asyncio.run(_query(host, port, "GetMessages", {"chatId": chat_id, "limit": limit})))
    except grpc.aio.AioRpcError as e:
        print(f"Error: {e.details()}")


if __name__ == "__main__":
    app()
