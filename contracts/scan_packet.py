from __future__ import annotations

import math
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _is_finite(x: float) -> bool:
    return isinstance(x, (int, float)) and math.isfinite(float(x))


class Intrinsics(BaseModel):
    model_config = ConfigDict(extra="forbid")

    fx: float
    fy: float
    cx: float
    cy: float
    width: int
    height: int

    @field_validator("fx", "fy", "cx", "cy")
    @classmethod
    def _finite(cls, v):
        if not _is_finite(v):
            raise ValueError("must be finite")
        return float(v)

    @field_validator("fx", "fy")
    @classmethod
    def _positive_focal(cls, v):
        v = float(v)
        if v <= 0.0:
            raise ValueError("must be > 0")
        return v

    @field_validator("width", "height")
    @classmethod
    def _positive_int(cls, v):
        if not isinstance(v, int):
            v = int(v)
        if v <= 0:
            raise ValueError("must be > 0")
        return v


class Pose(BaseModel):
    model_config = ConfigDict(extra="forbid")

    position: list[float]
    quaternion: list[float]  # xyzw

    @field_validator("position")
    @classmethod
    def _pos_len3_finite(cls, v):
        if not isinstance(v, (list, tuple)) or len(v) != 3:
            raise ValueError("position must be length-3 list")
        if not all(_is_finite(x) for x in v):
            raise ValueError("position must be finite")
        return [float(x) for x in v]

    @field_validator("quaternion")
    @classmethod
    def _quat_len4_unit(cls, v):
        if not isinstance(v, (list, tuple)) or len(v) != 4:
            raise ValueError("quaternion must be length-4 list")
        if not all(_is_finite(x) for x in v):
            raise ValueError("quaternion must be finite")
        if sum(float(x) * float(x) for x in v) < 1e-12:
            raise ValueError("quaternion must be non-zero")
        return [float(x) for x in v]


class ObjectClass(BaseModel):
    model_config = ConfigDict(extra="forbid")

    instance_id: int
    class_id: int = Field(ge=0)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class ScanMeta(BaseModel):
    """Metadata part of a scan upload; points and labels travel as raw binary parts."""

    model_config = ConfigDict(extra="forbid")

    version: str = Field(default="1.0", description="Scan contract version")
    timestamp: float
    intrinsics: Intrinsics
    # Missing => resolved from the pose buffer at `timestamp`.
    pose: Optional[Pose] = None
    points_frame: Literal["sensor", "world"] = "sensor"
    classes: list[ObjectClass] = Field(default_factory=list)

    @field_validator("timestamp")
    @classmethod
    def _ts_nonneg_finite(cls, v):
        if not _is_finite(v):
            raise ValueError("timestamp must be finite")
        v = float(v)
        if v < 0.0:
            raise ValueError("timestamp must be >= 0")
        return v

    def class_table(self) -> dict[int, int]:
        return {int(c.instance_id): int(c.class_id) for c in self.classes}


class PoseStamped(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timestamp: float
    pose: Pose


class NoEntryUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ground_as_noentry: Optional[bool] = None
    free_as_noentry: Optional[bool] = None
