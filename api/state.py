from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any

from config.load_config import AppConfig, find_default_config, load_app_config
from world.mapping_server import MappingServer


class LatestValueSink:
    """Topic consumer that keeps only the most recent message."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value: Any = None
        self.count = 0

    def __call__(self, message: Any) -> None:
        with self._lock:
            self._value = message
            self.count += 1

    def latest(self) -> tuple[Any, int]:
        with self._lock:
            return self._value, self.count


@dataclass
class RuntimeState:
    config: AppConfig = field(default_factory=AppConfig)
    config_source: str | None = None

    server: MappingServer | None = None

    # HTTP-attached topic consumers
    sinks: dict[str, LatestValueSink] = field(default_factory=dict)

    @classmethod
    def build(cls, config: AppConfig | None = None) -> "RuntimeState":
        config_source = None
        if config is None:
            cfg_path = find_default_config()
            if cfg_path is not None:
                config = load_app_config(cfg_path)
                config_source = str(cfg_path).replace("\\", "/")
            else:
                config = AppConfig()

        return cls(config=config, config_source=config_source, server=MappingServer(config))

    def attach(self, topic: str) -> LatestValueSink:
        sink = self.sinks.get(topic)
        if sink is None:
            sink = LatestValueSink()
            self.server.publisher.attach(topic, sink)
            self.sinks[topic] = sink
        return sink

    def detach(self, topic: str) -> bool:
        sink = self.sinks.pop(topic, None)
        if sink is None:
            return False
        self.server.publisher.detach(topic, sink)
        return True
