from typing import Optional


class ShareError(Exception):
    """Base error carrying the HTTP status and the message shown to clients."""

    status_code = 500
    public_message = "Internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.public_message)
        if message and self.status_code < 500:
            self.public_message = message

    def to_payload(self) -> dict:
        return {"error": self.public_message}


class Unauthorized(ShareError):
    status_code = 401
    public_message = "Unauthorized"


class BadRequest(ShareError):
    status_code = 400
    public_message = "Bad request"


class PayloadTooLarge(ShareError):
    status_code = 413
    public_message = "File too large"


class NotFound(ShareError):
    status_code = 404
    public_message = "Not Found"


class KeyCollisionError(ShareError):
    """Raised when a public file key is already taken; callers regenerate and retry."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Key collision for {key}, try again.")
        self.key = key


class UserInsertError(ShareError):
    def __init__(self, name: str, detail: Optional[str] = None) -> None:
        message = f"Failed to insert user {name}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.name = name


class UserNotFoundError(ShareError):
    def __init__(self, ident: str) -> None:
        super().__init__(f"User not found for {ident}")
        self.ident = ident


class ProtectedUserError(ShareError):
    """Raised when an operator tries to delete the fallback owner account."""

    status_code = 403
    public_message = "This user cannot be deleted"

    def __init__(self, name: str) -> None:
        super().__init__(f"User {name} is protected and cannot be deleted")
        self.name = name


class FileCreateError(ShareError):
    def __init__(self, detail: Optional[str] = None) -> None:
        super().__init__(detail or "Failed to create file")
