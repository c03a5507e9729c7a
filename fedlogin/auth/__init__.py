from fedlogin.auth.dependencies import get_current_user, get_current_user_optional
from fedlogin.auth.jwt import create_session_token, decode_token
from fedlogin.auth.schemas import SessionToken, TokenData

__all__ = [
    "create_session_token",
    "decode_token",
    "SessionToken",
    "TokenData",
    "get_current_user",
    "get_current_user_optional",
]
