from fedlogin.users.store import UserStore

__all__ = ["UserStore"]
