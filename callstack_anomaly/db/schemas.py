"""Pydantic models to validate call-tree payloads before encoding."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class CallNodePayload(BaseModel):
    address: int
    depth: Optional[int] = Field(default=None, ge=0)
    start: int
    end: Optional[int] = None
    duration: Optional[int] = Field(default=None, ge=0)
    self_time: Optional[int] = Field(default=None, ge=0)
    children: List[CallNodePayload] = Field(default_factory=list)

    @field_validator("address", mode="before")
    @classmethod
    def parse_address(cls, value):
        if isinstance(value, bool):
            raise ValueError("invalid address")
        if isinstance(value, int):
            return value
        if isinstance(value, str):
            raw = value.strip().lower()
            if not raw:
                raise ValueError("empty address")
            return int(raw, 16) if raw.startswith("0x") else int(raw)
        raise ValueError("invalid address")

    @model_validator(mode="after")
    def check_interval(self):
        if self.duration is None:
            if self.end is None:
                raise ValueError("either 'end' or 'duration' is required")
            if self.end < self.start:
                raise ValueError("'end' precedes 'start'")
            self.duration = self.end - self.start
        elif self.end is not None and self.end - self.start != self.duration:
            raise ValueError("'end' and 'duration' disagree")
        return self

    model_config = {"extra": "allow"}


CallNodePayload.model_rebuild()


class TracePayload(BaseModel):
    name: str = "trace"
    calls: List[CallNodePayload] = Field(default_factory=list)

    model_config = {"extra": "allow"}
