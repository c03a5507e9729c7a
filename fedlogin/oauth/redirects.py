from __future__ import annotations

from urllib.parse import quote, urlsplit

from fastapi import Request

from fedlogin.config import settings


def is_local_path(target: str | None) -> bool:
    """True for same-origin absolute paths such as ``/dash?tab=1``.

    Rejects scheme-relative (``//evil``), backslash tricks (``/\\evil``),
    absolute URLs and anything carrying control characters.
    """
    if not target or not target.startswith("/"):
        return False
    if target.startswith("//") or target.startswith("/\\"):
        return False
    if any(ord(ch) < 0x20 or ch == "\x7f" for ch in target):
        return False
    parts = urlsplit(target)
    return not parts.scheme and not parts.netloc


def safe_redirect(target: str | None, default: str | None = None) -> str:
    """Return ``target`` when it is a local path, otherwise the default landing page."""
    if is_local_path(target):
        return target  # type: ignore[return-value]
    return default or settings.default_redirect


def request_base_url(request: Request) -> str:
    """Scheme and host of the current request as seen by the browser."""
    if settings.public_base_url:
        return settings.public_base_url.rstrip("/")
    scheme = "http"
    if request.url.scheme == "https" or request.headers.get("x-forwarded-proto") == "https":
        scheme = "https"
    host = request.headers.get("host") or request.url.netloc
    return f"{scheme}://{host}"


def callback_url(base_url: str, provider: str) -> str:
    """Provider callback URL. Start, Link and Callback must all build it here."""
    return f"{base_url}/auth/oauth/{provider}/callback"


def with_error(path: str, code: str) -> str:
    separator = "&" if "?" in path else "?"
    return f"{path}{separator}error={quote(code)}"
