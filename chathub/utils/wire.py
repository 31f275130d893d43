"""
Wire format shared by server and client.

Envelopes travel over gRPC as UTF-8 JSON documents; the method handlers are
registered generically, so these (de)serializers take the place of compiled
message classes.
"""

import json

SERVICE_NAME = "chathub.ChatService"

OPEN_STREAM = "OpenStream"
UNARY_METHODS = (
    "Health",
    "ListUsers",
    "ListOnlineUsers",
    "ListGroups",
    "GetGroup",
    "ListGroupMembers",
    "GetMessages",
)


def method_path(name: str) -> str:
    return f"/{SERVICE_NAME}/{name}"


def encode(obj) -> bytes:
    return json.dumps(obj, ensure_ascii=False).encode("utf-8")


def decode(raw: bytes):
    """Decode a JSON document; malformed input becomes an error envelope."""
    if not raw:
        return {}
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        return {"event": None, "malformed": str(e)}


def envelope(event: str, data=None, request_id=None) -> dict:
    env = {"event": event, "data": data}
    if request_id is not None:
        env["request_id"] = request_id
    return env
