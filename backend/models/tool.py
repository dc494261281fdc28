"""Tool invocation data models."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


class ToolFailureReason(str, Enum):
    """Why a tool call produced no usable payload."""
    NOT_CONNECTED = "NOT_CONNECTED"
    CALL_FAILED = "CALL_FAILED"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"


class Hardiness(BaseModel):
    """Hardiness zone range."""
    model_config = ConfigDict(extra="ignore")

    min: Optional[Union[str, int, float]] = None
    max: Optional[Union[str, int, float]] = None


class PlantRecord(BaseModel):
    """
    Validated plant data returned by the tool server.

    Every field is optional, but a record must name the plant somehow
    (common or scientific name) to be usable.
    """
    model_config = ConfigDict(extra="ignore")

    common_name: Optional[str] = None
    scientific_name: Optional[str] = None
    family: Optional[str] = None
    origin: List[str] = []
    hardiness: Optional[Hardiness] = None
    cycle: Optional[str] = None
    watering: Optional[str] = None
    sunlight: List[str] = []
    soil: List[str] = []
    propagation: List[str] = []

    @field_validator("scientific_name", mode="before")
    @classmethod
    def _first_scientific_name(cls, value: Any) -> Any:
        # Some sources return a list of synonyms; the first is the accepted name
        if isinstance(value, list):
            return value[0] if value else None
        return value

    @field_validator("origin", "sunlight", "soil", "propagation", mode="before")
    @classmethod
    def _as_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @model_validator(mode="after")
    def _require_name(self) -> "PlantRecord":
        if not self.common_name and not self.scientific_name:
            raise ValueError("plant record has neither common_name nor scientific_name")
        return self

    @property
    def display_name(self) -> str:
        return self.common_name or self.scientific_name or ""


@dataclass(frozen=True)
class ToolCallResult:
    """Tagged outcome of a tool call; exactly one of payload/reason is set."""
    ok: bool
    payload: Optional[Union[PlantRecord, str]] = None
    reason: Optional[ToolFailureReason] = None

    @property
    def is_error(self) -> bool:
        return not self.ok

    @classmethod
    def success(cls, payload: Union[PlantRecord, str]) -> "ToolCallResult":
        return cls(ok=True, payload=payload)

    @classmethod
    def failure(cls, reason: ToolFailureReason) -> "ToolCallResult":
        return cls(ok=False, reason=reason)


@dataclass(frozen=True)
class ToolCall:
    """A tool name plus the arguments to invoke it with."""
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
