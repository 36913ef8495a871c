"""
Playlist owners (users) and standalone playlists.
"""
import re
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from channeldeck.models.channel import reject_control_chars

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class Role(str, Enum):
    """Admins see the whole catalog; users see their own channel list."""

    ADMIN = "Admin"
    USER = "User"


class CodeSpace(str, Enum):
    """Independent namespaces for 6-character codes (values are table names)."""

    USER = "users"
    PLAYLIST = "playlists"


class User(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: int
    username: str
    email: str
    role: Role = Role.USER
    playlist_code: str
    is_active: bool = True
    last_login: Optional[datetime] = None
    last_paired_device: Optional[str] = None
    device_model: Optional[str] = None
    paired_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    def to_client(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class UserIn(BaseModel):
    username: str = Field(min_length=3, max_length=50)
    email: str
    role: Role = Role.USER
    is_active: bool = Field(True, alias="isActive")

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        if not EMAIL_PATTERN.match(value):
            raise ValueError("Invalid email address")
        return value

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return reject_control_chars(value)


class Playlist(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: int
    user_id: int
    name: str
    description: str = ""
    playlist_code: str
    is_public: bool = False
    channel_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_client(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class PlaylistIn(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True
    )

    name: str = Field("My Playlist", min_length=1, max_length=100)
    description: str = Field("", max_length=500)
    is_public: bool = False
    channel_ids: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return reject_control_chars(value)
