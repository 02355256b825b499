from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


class ServerCfg(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000


class MappingCfg(BaseModel):
    # Background voxel pitch; object trees take their pitch from the class table.
    resolution: float = Field(default=0.05, gt=0.0)
    # Negative => unbounded.
    max_range: float = -1.0
    compress_map: bool = False
    subsample_stride: int = Field(default=2, ge=1)
    num_workers: int = Field(default=4, ge=1)


class SensorModelCfg(BaseModel):
    hit: float = 0.7
    miss: float = 0.4
    min: float = 0.12
    max: float = 0.97

    @field_validator("hit", "miss", "min", "max")
    @classmethod
    def _open_unit(cls, v):
        v = float(v)
        if not 0.0 < v < 1.0:
            raise ValueError("probabilities must be in (0, 1)")
        return v

    @model_validator(mode="after")
    def _ordered(self):
        if self.min >= self.max:
            raise ValueError("sensor_model.min must be < sensor_model.max")
        if self.hit <= 0.5 or self.miss >= 0.5:
            raise ValueError("sensor_model.hit must be > 0.5 and sensor_model.miss < 0.5")
        return self


class NoEntryCfg(BaseModel):
    ground_as_noentry: bool = True
    free_as_noentry: bool = True
    # None => sensor_model.max
    occupancy_threshold: float | None = None


class TrackingCfg(BaseModel):
    association_threshold: float = Field(default=0.5, ge=0.0, le=1.0)


class RenderCfg(BaseModel):
    use_render_service: bool = False
    url: str = "http://127.0.0.1:7000/render"
    timeout_s: float = 2.0


class PublishCfg(BaseModel):
    frame_id: str = "map"
    sensor_frame_id: str = "camera_color_optical_frame"
    filter_speckles: bool = False


class PoseCfg(BaseModel):
    wait_timeout_s: float = 0.1
    cache_s: float = 30.0
    tolerance_s: float = 0.0


class ClassesCfg(BaseModel):
    default_pitch: float = 0.01
    pitch_overrides: dict[int, float] = Field(default_factory=dict)


class ObservabilityCfg(BaseModel):
    json_logs: bool = True
    log_level: str = "INFO"
    metrics_enabled: bool = True
    otel_enabled: bool = False
    otel_service_name: str = "occupancy-mapper"
    # If empty => SDK will rely on OTEL_* env vars.
    otel_exporter_otlp_endpoint: str | None = None


class AppConfig(BaseModel):
    server: ServerCfg = Field(default_factory=ServerCfg)
    mapping: MappingCfg = Field(default_factory=MappingCfg)
    sensor_model: SensorModelCfg = Field(default_factory=SensorModelCfg)
    noentry: NoEntryCfg = Field(default_factory=NoEntryCfg)
    tracking: TrackingCfg = Field(default_factory=TrackingCfg)
    render: RenderCfg = Field(default_factory=RenderCfg)
    publish: PublishCfg = Field(default_factory=PublishCfg)
    pose: PoseCfg = Field(default_factory=PoseCfg)
    classes: ClassesCfg = Field(default_factory=ClassesCfg)
    observability: ObservabilityCfg = Field(default_factory=ObservabilityCfg)


def load_app_config(path: Path) -> AppConfig:
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config YAML must be a mapping, got {type(raw).__name__}")
    return AppConfig(**raw)


def find_default_config() -> Path | None:
    env = os.getenv("OCCMAP_CONFIG")
    candidates = []
    if env:
        candidates.append(Path(env))
    candidates += [
        Path("config") / "default.yaml",
        Path(__file__).with_name("default.yaml"),
    ]
    for p in candidates:
        if p.exists() and p.is_file():
            return p
    return None
