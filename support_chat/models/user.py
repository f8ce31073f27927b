from enum import Enum
from typing import Optional, TypedDict


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"

    @property
    def other(self) -> "Role":
        return Role.ADMIN if self is Role.USER else Role.USER


class UserDocument(TypedDict, total=False):

    _id: object
    name: str
    email: str
    avatar: Optional[str]
    role: str
