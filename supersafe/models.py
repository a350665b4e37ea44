"""
Supersafe Data Models

Value objects shared by the monitoring pipeline. ThreatAnalysis is the only
place malformed model output is sanitized: its validators coerce anything
they receive into a valid instance instead of rejecting it.
"""

import base64
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

NO_SUMMARY = "No summary provided."
NO_ACTION = "No suggested action provided."
UNPARSEABLE_SUMMARY = "Unable to parse structured response from model."
UNPARSEABLE_ACTION = "Review the raw model output and adjust the prompt if necessary."
NOT_CONFIGURED_SUMMARY = (
    "Venice API key is not configured. Set SS_VENICE_API_KEY in a .env file to enable detection."
)
NOT_CONFIGURED_ACTION = (
    "Add your Venice API key to a local .env file. Do not commit it to version control."
)


class ThreatLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @classmethod
    def coerce(cls, value: Any) -> "ThreatLevel":
        """Lower-case match against the known levels, anything else is NONE."""
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.NONE
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.NONE

    # str's own comparisons are alphabetical, so all four are overridden
    def __lt__(self, other):
        if not isinstance(other, ThreatLevel):
            return NotImplemented
        return self.severity < other.severity

    def __le__(self, other):
        if not isinstance(other, ThreatLevel):
            return NotImplemented
        return self.severity <= other.severity

    def __gt__(self, other):
        if not isinstance(other, ThreatLevel):
            return NotImplemented
        return self.severity > other.severity

    def __ge__(self, other):
        if not isinstance(other, ThreatLevel):
            return NotImplemented
        return self.severity >= other.severity

    def __str__(self) -> str:
        return self.value


_SEVERITY = {
    ThreatLevel.NONE: 0,
    ThreatLevel.LOW: 1,
    ThreatLevel.MEDIUM: 2,
    ThreatLevel.HIGH: 3,
}


def _non_empty_text(value: Any, placeholder: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return placeholder


class ThreatAnalysis(BaseModel):
    """Normalized result of classifying one frame."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    threat_level: ThreatLevel = Field(default=ThreatLevel.NONE, alias="threatLevel")
    summary: str = NO_SUMMARY
    confidence: float = 0.0
    suggested_action: str = Field(default=NO_ACTION, alias="suggestedAction")

    @field_validator("threat_level", mode="before")
    @classmethod
    def _coerce_level(cls, value: Any) -> ThreatLevel:
        return ThreatLevel.coerce(value)

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value: Any) -> float:
        # bool is an int subclass but not a confidence
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 0.0
        try:
            number = float(value)
        except OverflowError:
            # JSON integers are unbounded
            return 0.0
        if not math.isfinite(number) or number < 0 or number > 1:
            return 0.0
        return number

    @field_validator("summary", mode="before")
    @classmethod
    def _coerce_summary(cls, value: Any) -> str:
        return _non_empty_text(value, NO_SUMMARY)

    @field_validator("suggested_action", mode="before")
    @classmethod
    def _coerce_action(cls, value: Any) -> str:
        return _non_empty_text(value, NO_ACTION)

    @classmethod
    def degraded(cls, raw_text: str = "") -> "ThreatAnalysis":
        """Fallback used when the model answer cannot be parsed."""
        return cls(
            threat_level=ThreatLevel.NONE,
            summary=raw_text if raw_text and raw_text.strip() else UNPARSEABLE_SUMMARY,
            confidence=0.0,
            suggested_action=UNPARSEABLE_ACTION,
        )

    @classmethod
    def not_configured(cls) -> "ThreatAnalysis":
        return cls(
            threat_level=ThreatLevel.NONE,
            summary=NOT_CONFIGURED_SUMMARY,
            confidence=0.0,
            suggested_action=NOT_CONFIGURED_ACTION,
        )

    @property
    def is_qualifying(self) -> bool:
        return self.threat_level != ThreatLevel.NONE

    def should_announce(self, min_level: Union[ThreatLevel, str] = ThreatLevel.MEDIUM) -> bool:
        min_level = ThreatLevel.coerce(min_level)
        if min_level == ThreatLevel.NONE:
            min_level = ThreatLevel.LOW
        return self.threat_level >= min_level

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def new_id() -> str:
    return str(uuid.uuid4())


def utc_timestamp() -> str:
    """ISO-8601 instant with millisecond precision and a Z suffix."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ThreatEvent(ThreatAnalysis):
    """Qualifying analysis recorded in the timeline."""

    id: str = Field(default_factory=new_id)
    timestamp: str = Field(default_factory=utc_timestamp)

    @classmethod
    def from_analysis(cls, analysis: ThreatAnalysis) -> "ThreatEvent":
        return cls(
            threat_level=analysis.threat_level,
            summary=analysis.summary,
            confidence=analysis.confidence,
            suggested_action=analysis.suggested_action,
        )


class MonitoringState(str, Enum):
    CAMERA_NOT_READY = "camera_not_ready"
    IDLE = "idle"
    MONITORING_IDLE = "monitoring_idle"
    MONITORING_ANALYZING = "monitoring_analyzing"

    @property
    def is_monitoring(self) -> bool:
        return self in (MonitoringState.MONITORING_IDLE, MonitoringState.MONITORING_ANALYZING)

    @property
    def label(self) -> str:
        return _STATE_LABELS[self]


_STATE_LABELS = {
    MonitoringState.CAMERA_NOT_READY: "Camera not ready",
    MonitoringState.IDLE: "Idle",
    MonitoringState.MONITORING_IDLE: "Monitoring",
    MonitoringState.MONITORING_ANALYZING: "Analyzing frame...",
}


@dataclass(frozen=True)
class EncodedImage:
    """Still image produced by a frame source."""
    data: bytes
    mime_type: str = "image/jpeg"

    def to_data_uri(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"
