"""API route modules."""

from . import auth
from . import chats
from . import notes

__all__ = ["auth", "chats", "notes"]
