from __future__ import annotations

from typing import Optional

from fastapi import HTTPException

# User-facing messages for the demo login/logout paths.
MSG_CREDENTIALS_REQUIRED = "Email и пароль обязательны"
MSG_INVALID_CREDENTIALS = "Неверный email или пароль"
MSG_LOGIN_SUCCEEDED = "Успешный вход в систему"
MSG_LOGIN_FAILED = "Ошибка входа в систему"
MSG_LOGOUT_SUCCEEDED = "Успешный выход из системы"
MSG_LOGOUT_FAILED = "Ошибка выхода из системы"
MSG_UNAUTHORIZED = "Unauthorized"


class AuthError(HTTPException):
    """Base for auth failures; rendered as `{"message": detail}`."""

    status_code_default = 500
    message_default = "Internal Server Error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(status_code=self.status_code_default, detail=message or self.message_default)

    @property
    def message(self) -> str:
        return str(self.detail)


class BadRequest(AuthError):
    status_code_default = 400
    message_default = "Bad Request"


class Unauthorized(AuthError):
    status_code_default = 401
    message_default = MSG_UNAUTHORIZED


class InternalError(AuthError):
    status_code_default = 500
    message_default = "Internal Server Error"
