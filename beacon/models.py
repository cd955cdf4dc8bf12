from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

EVENT_FIELDS = ("key", "count", "sum", "dur", "segmentation")
USER_DETAIL_FIELDS = (
    "name", "username", "email", "organization", "phone",
    "picture", "gender", "byear", "custom",
)
VIEW_EVENT = "[CLY]_view"
RATING_EVENT = "[CLY]_star_rating"


class RequestKind(str, Enum):
    BEGIN_SESSION = "begin_session"
    SESSION_DURATION = "session_duration"
    END_SESSION = "end_session"
    EVENTS = "events"
    USER_DETAILS = "user_details"
    CRASH = "crash"
    CONSENT = "consent"
    CONVERSION = "conversion"
    MERGE = "merge"


def pick(source: dict, props: tuple[str, ...]) -> dict:
    """Copy only the listed properties that are present in source."""
    return {p: source[p] for p in props if p in source and source[p] is not None}


def generate_device_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Event:
    """A custom or internal event waiting in the event batch."""
    key: str
    count: int = 1
    sum: float | None = None
    dur: float | None = None
    segmentation: dict | None = None
    timestamp: int | None = None
    hour: int | None = None
    dow: int | None = None

    @classmethod
    def from_value(cls, value: Any, keep_timestamp: bool = False) -> "Event | None":
        """Build an Event from a dict or Event, None when the key is missing."""
        if isinstance(value, Event):
            value = value.to_dict()
        if not isinstance(value, dict) or not value.get("key"):
            return None
        props = EVENT_FIELDS + ("timestamp",) if keep_timestamp else EVENT_FIELDS
        data = pick(value, props)
        if not data.get("count"):
            data["count"] = 1
        return cls(**data)

    def to_dict(self) -> dict:
        out: dict[str, Any] = {"key": self.key, "count": self.count}
        for name in ("sum", "dur", "segmentation", "timestamp", "hour", "dow"):
            value = getattr(self, name)
            if value is not None:
                out[name] = value
        return out


@dataclass
class SessionState:
    started: bool = False
    last_beat: int = 0
    auto_extend: bool = True
    stored_duration: int = 0
    track_time: bool = True


@dataclass
class ConsentEntry:
    """Consent for one core feature or one caller-defined group.

    optin is None until the feature has been explicitly added or removed.
    """
    optin: bool | None = None
    features: list[str] | None = None

    @property
    def is_group(self) -> bool:
        return self.features is not None


# ── Request payloads ────────────────────────────────────────────────


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


class Payload:
    """A typed request body that renders to flat query parameters."""
    kind: ClassVar[RequestKind]

    def to_params(self) -> dict[str, Any]:
        raise NotImplementedError


@dataclass
class BeginSession(Payload):
    kind: ClassVar[RequestKind] = RequestKind.BEGIN_SESSION
    metrics: dict = field(default_factory=dict)

    def to_params(self) -> dict[str, Any]:
        return {"begin_session": 1, "metrics": _dumps(self.metrics)}


@dataclass
class SessionDuration(Payload):
    kind: ClassVar[RequestKind] = RequestKind.SESSION_DURATION
    seconds: int = 0

    def to_params(self) -> dict[str, Any]:
        return {"session_duration": self.seconds}


@dataclass
class EndSession(Payload):
    kind: ClassVar[RequestKind] = RequestKind.END_SESSION
    seconds: int = 0

    def to_params(self) -> dict[str, Any]:
        return {"end_session": 1, "session_duration": self.seconds}


@dataclass
class EventBatch(Payload):
    kind: ClassVar[RequestKind] = RequestKind.EVENTS
    events: list[dict] = field(default_factory=list)

    def to_params(self) -> dict[str, Any]:
        # flat query encoding, so the whole batch travels as one string value
        return {"events": _dumps(self.events)}


@dataclass
class UserDetails(Payload):
    kind: ClassVar[RequestKind] = RequestKind.USER_DETAILS
    details: dict = field(default_factory=dict)

    def to_params(self) -> dict[str, Any]:
        return {"user_details": _dumps(self.details)}


@dataclass
class Crash(Payload):
    kind: ClassVar[RequestKind] = RequestKind.CRASH
    report: dict = field(default_factory=dict)

    def to_params(self) -> dict[str, Any]:
        return {"crash": _dumps(self.report)}


@dataclass
class ConsentSync(Payload):
    kind: ClassVar[RequestKind] = RequestKind.CONSENT
    changes: dict[str, bool] = field(default_factory=dict)

    def to_params(self) -> dict[str, Any]:
        return {"consent": _dumps(self.changes)}


@dataclass
class Conversion(Payload):
    kind: ClassVar[RequestKind] = RequestKind.CONVERSION
    campaign_id: str = ""
    campaign_user: str | None = None

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"campaign_id": self.campaign_id}
        if self.campaign_user:
            params["campaign_user"] = self.campaign_user
        return params


@dataclass
class DeviceIdMerge(Payload):
    kind: ClassVar[RequestKind] = RequestKind.MERGE
    old_device_id: str = ""

    def to_params(self) -> dict[str, Any]:
        return {"old_device_id": self.old_device_id}
