from __future__ import annotations

from fastapi import Request
from fastapi.responses import Response

from fedlogin.auth.schemas import SessionToken

SESSION_COOKIE = "session"


def set_session_cookie(response: Response, request: Request, session: SessionToken) -> None:
    """Set the httpOnly session cookie on a response."""
    secure = request.url.scheme == "https" or request.headers.get("x-forwarded-proto") == "https"
    response.set_cookie(
        SESSION_COOKIE,
        session.token,
        httponly=True,
        secure=secure,
        samesite="lax",
        path="/",
        expires=session.expires_at,
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE, path="/")
