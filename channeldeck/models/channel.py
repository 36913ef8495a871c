"""
Channel and connectivity-test data models.

``Channel`` is the canonical stored record. ``ChannelIn`` is the ingestion
boundary: catalog and M3U imports arrive with several field-name aliases and
are normalized here, so nothing past the store ever sees aliasing.
"""
import hashlib
import re
from datetime import datetime
from enum import Enum
from typing import Optional
from urllib.parse import urlparse

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

DEFAULT_GROUP = "Uncategorized"


def url_problem(url: Optional[str]) -> Optional[str]:
    """Return why ``url`` is not a usable stream URL, or None if it is."""
    if not url or not url.strip():
        return "URL is empty"
    try:
        parsed = urlparse(url.strip())
    except ValueError as e:
        return f"URL could not be parsed: {e}"
    if not parsed.scheme:
        return "URL has no scheme"
    if not parsed.netloc or not parsed.hostname:
        return "URL has no host"
    return None


# Characters that would break an EXTINF line or a quoted attribute on it
CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")

# Fields written inside quoted EXTINF attributes (the name is the tvg-name fallback)
ATTRIBUTE_FIELDS = (
    "channel_id", "channel_name", "channel_img", "channel_group", "tvg_name", "tvg_logo",
)

TEXT_FIELDS = ATTRIBUTE_FIELDS + (
    "channel_url", "channel_drm_key", "channel_drm_type",
)


def reject_control_chars(value):
    if isinstance(value, str) and CONTROL_CHARS.search(value):
        raise ValueError("must not contain control characters or line breaks")
    return value


def _reject_quotes(value):
    if isinstance(value, str) and '"' in value:
        raise ValueError("must not contain double quotes")
    return value


class TestStatus(str, Enum):
    """Outcome of the most recent connectivity test."""

    __test__ = False

    UNTESTED = "untested"
    WORKING = "working"
    NOT_WORKING = "not_working"

    @classmethod
    def from_working(cls, working: bool) -> "TestStatus":
        return cls.WORKING if working else cls.NOT_WORKING

    @property
    def is_working(self) -> Optional[bool]:
        if self is TestStatus.UNTESTED:
            return None
        return self is TestStatus.WORKING


class Channel(BaseModel):
    """A stored channel, serialized with camelCase keys for clients."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: Optional[int] = None
    channel_id: str
    channel_name: str
    channel_url: str
    channel_img: str = ""
    channel_group: str = DEFAULT_GROUP
    channel_drm_key: str = ""
    channel_drm_type: str = ""
    tvg_name: str = ""
    tvg_logo: str = ""
    order: int = 0
    is_active: bool = True

    country: Optional[str] = None
    language: Optional[str] = None
    resolution: Optional[str] = None

    # Test metadata, written only by the batch test orchestrator
    last_tested: Optional[datetime] = None
    status: TestStatus = TestStatus.UNTESTED
    response_time: Optional[int] = None
    is_testing: bool = False

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @computed_field(alias="isWorking")
    @property
    def is_working(self) -> Optional[bool]:
        return self.status.is_working

    def to_client(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class ChannelIn(BaseModel):
    """Channel payload accepted from admins, catalog imports and M3U imports."""

    model_config = ConfigDict(str_strip_whitespace=True)

    channel_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("channelId", "channel_id", "id", "tvg-id", "tvgId")
    )
    channel_name: str = Field(
        validation_alias=AliasChoices("channelName", "channel_name", "name", "title")
    )
    channel_url: str = Field(
        validation_alias=AliasChoices("channelUrl", "channel_url", "url", "streamUrl")
    )
    channel_img: str = Field(
        "", validation_alias=AliasChoices("channelImg", "channel_img", "image")
    )
    channel_group: str = Field(
        DEFAULT_GROUP,
        validation_alias=AliasChoices(
            "channelGroup", "channel_group", "group", "group-title", "groupTitle", "category"
        ),
    )
    channel_drm_key: str = Field(
        "", validation_alias=AliasChoices("channelDrmKey", "channel_drm_key", "drmKey")
    )
    channel_drm_type: str = Field(
        "", validation_alias=AliasChoices("channelDrmType", "channel_drm_type", "drmType")
    )
    tvg_name: str = Field("", validation_alias=AliasChoices("tvgName", "tvg_name", "tvg-name"))
    tvg_logo: str = Field(
        "", validation_alias=AliasChoices("tvgLogo", "tvg_logo", "tvg-logo", "logo")
    )
    order: int = 0
    is_active: bool = Field(True, validation_alias=AliasChoices("isActive", "is_active"))
    country: Optional[str] = None
    language: Optional[str] = None
    resolution: Optional[str] = None

    @field_validator(
        "channel_img", "channel_drm_key", "channel_drm_type", "tvg_name", "tvg_logo",
        mode="before",
    )
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else value

    @field_validator("channel_group", mode="before")
    @classmethod
    def _default_group(cls, value):
        if value is None or (isinstance(value, str) and not value.strip()):
            return DEFAULT_GROUP
        return value

    @field_validator("channel_url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        problem = url_problem(value)
        if problem:
            raise ValueError(problem)
        return value

    @field_validator(*TEXT_FIELDS)
    @classmethod
    def _check_text(cls, value):
        return reject_control_chars(value)

    @field_validator(*ATTRIBUTE_FIELDS)
    @classmethod
    def _check_attribute(cls, value):
        return _reject_quotes(value)

    @model_validator(mode="after")
    def _derive_channel_id(self) -> "ChannelIn":
        # Imports without a stable id get one derived from the stream URL
        if not self.channel_id:
            digest = hashlib.md5(self.channel_url.encode()).hexdigest()[:12]
            self.channel_id = f"channel_{digest}"
        return self


class ChannelUpdate(BaseModel):
    """Partial channel edit; only fields present in the payload are applied."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True
    )

    channel_name: Optional[str] = None
    channel_url: Optional[str] = None
    channel_img: Optional[str] = None
    channel_group: Optional[str] = None
    channel_drm_key: Optional[str] = None
    channel_drm_type: Optional[str] = None
    tvg_name: Optional[str] = None
    tvg_logo: Optional[str] = None
    order: Optional[int] = None
    is_active: Optional[bool] = None
    country: Optional[str] = None
    language: Optional[str] = None
    resolution: Optional[str] = None

    @field_validator("channel_name", "channel_url", "order", "is_active", mode="before")
    @classmethod
    def _reject_null(cls, value):
        # Stored records require these; an explicit null is rejected rather than written
        if value is None:
            raise ValueError("must not be null")
        return value

    @field_validator(
        "channel_img", "channel_drm_key", "channel_drm_type", "tvg_name", "tvg_logo",
        mode="before",
    )
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else value

    @field_validator("channel_group", mode="before")
    @classmethod
    def _default_group(cls, value):
        if value is None or (isinstance(value, str) and not value.strip()):
            return DEFAULT_GROUP
        return value

    @field_validator(*TEXT_FIELDS, check_fields=False)
    @classmethod
    def _check_text(cls, value):
        return reject_control_chars(value)

    @field_validator(*ATTRIBUTE_FIELDS, check_fields=False)
    @classmethod
    def _check_attribute(cls, value):
        return _reject_quotes(value)

    @field_validator("channel_url")
    @classmethod
    def _check_url(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            problem = url_problem(value)
            if problem:
                raise ValueError(problem)
        return value


class TestResult(BaseModel):
    """Outcome of a single connectivity probe. Never raised, always returned."""

    __test__ = False

    working: bool
    status_code: Optional[int] = None
    response_time_ms: int = 0
    error_reason: Optional[str] = None
    message: str = ""
    content_type: Optional[str] = None
    final_url: Optional[str] = None


class BatchItemResult(BaseModel):
    """One entry of a batch run: a probe outcome, a not-found marker, or an error."""

    channel_id: str
    channel_name: Optional[str] = None
    result: Optional[TestResult] = None
    not_found: bool = False
    error: Optional[str] = None

    @property
    def tested(self) -> bool:
        """True when the probe produced a definitive outcome."""
        return self.result is not None

    def to_client(self) -> dict:
        item = {
            "channelId": self.channel_id,
            "channelName": self.channel_name,
            "working": bool(self.result and self.result.working),
            "statusCode": self.result.status_code if self.result else None,
            "responseTime": self.result.response_time_ms if self.result else None,
        }
        if self.result is not None:
            item["message"] = self.result.message
            if self.result.error_reason:
                item["errorReason"] = self.result.error_reason
        if self.not_found:
            item["notFound"] = True
        if self.error:
            item["error"] = self.error
        return item


class BatchSummary(BaseModel):
    """Aggregate outcome of a batch run."""

    tested: int
    working: int
    not_working: int
    cancelled: bool = False
    results: list[BatchItemResult] = Field(default_factory=list)

    @classmethod
    def from_items(cls, items: list[BatchItemResult], cancelled: bool = False) -> "BatchSummary":
        probed = [item for item in items if item.tested]
        working = sum(1 for item in probed if item.result.working)
        return cls(
            tested=len(items),
            working=working,
            not_working=len(probed) - working,
            cancelled=cancelled,
            results=items,
        )

    def to_client(self) -> dict:
        return {
            "success": True,
            "tested": self.tested,
            "working": self.working,
            "notWorking": self.not_working,
            "cancelled": self.cancelled,
            "results": [item.to_client() for item in self.results],
        }
