from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from support_chat.models.user import Role


class CurrentUser(BaseModel):
    """Caller identity taken from the bearer token."""

    id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


class ParticipantPublic(BaseModel):

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    role: Role
    name: Optional[str] = None
    email: Optional[str] = None
    avatar: Optional[str] = None
