"""
Chat API errors.

Each error carries the response code and HTTP status the view returns as
{"code": ..., "message": ...}.
"""


class ChatAPIError(Exception):
    code = 'INTERNAL_ERROR'
    status = 500
    default_message = 'An unexpected error occurred.'

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {'code': self.code, 'message': self.message}


class InvalidInput(ChatAPIError):
    code = 'INVALID_INPUT'
    status = 400
    default_message = 'Invalid request.'


class Unauthorized(ChatAPIError):
    code = 'UNAUTHORIZED'
    status = 401
    default_message = 'Please log in to use the chat.'


class RateLimited(ChatAPIError):
    code = 'RATE_LIMITED'
    status = 429

    def __init__(self, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"You're sending messages too fast. Please wait {retry_after_seconds} seconds."
        )


class InternalError(ChatAPIError):
    pass
