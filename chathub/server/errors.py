"""Categorical failures of chat operations.

Every rejected operation raises one of these from the repositories; the
coordinator turns them into negative acknowledgements for the caller.
"""


class ChatError(ValueError):
    code = "Error"
    default_message = "Operation failed"

    def __init__(self, message: str = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def to_response(self) -> dict:
        return {"success": False, "error": self.message, "code": self.code}


class Unauthenticated(ChatError):
    code = "Unauthenticated"
    default_message = "User not found"


class NotFound(ChatError):
    code = "NotFound"
    default_message = "Not found"


class NameRequired(ChatError):
    code = "NameRequired"
    default_message = "Name is required"


class NameTaken(ChatError):
    code = "NameTaken"
    default_message = "Name already taken"


class AlreadyMember(ChatError):
    code = "AlreadyMember"
    default_message = "Already in group"


class NotMember(ChatError):
    code = "NotMember"
    default_message = "Not in group"


class NotCreator(ChatError):
    code = "NotCreator"
    default_message = "Only the group creator can delete the group"


class Forbidden(ChatError):
    code = "Forbidden"
    default_message = "Operation not allowed"


class EmptyContent(ChatError):
    code = "EmptyContent"
    default_message = "Message cannot be empty"


class DifferentInstance(ChatError):
    code = "DifferentInstance"
    default_message = "Cannot message users from different servers"


class BadRequest(ChatError):
    code = "BadRequest"
    default_message = "Malformed request"
