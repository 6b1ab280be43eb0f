from __future__ import annotations

import json
import logging
from typing import Any
from uuid import UUID

try:  # pragma: no cover - optional dependency
    from kafka import KafkaProducer
except ImportError:  # pragma: no cover - kafka extra not installed
    KafkaProducer = None  # type: ignore

from storyshort.models.domain import ProgressEvent


class ProgressEventPublisher:
    """Pushes progress events to Kafka so clients can follow a video without polling."""

    def __init__(self, bootstrap_servers: str, topic: str, logger: logging.Logger | None = None) -> None:
        if KafkaProducer is None:
            raise RuntimeError("kafka-python is not installed")
        if not bootstrap_servers:
            raise ValueError("bootstrap_servers is required")
        if not topic:
            raise ValueError("topic is required")
        self._topic = topic
        self._logger = logger or logging.getLogger(__name__)
        self._producer = KafkaProducer(
            bootstrap_servers=bootstrap_servers,
            key_serializer=lambda key: key.encode("utf-8"),
            value_serializer=lambda payload: json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            linger_ms=5,
        )

    def publish_progress(self, video_id: UUID, event: ProgressEvent) -> None:
        payload: dict[str, Any] = {"video_id": str(video_id), "event": event.model_dump(mode="json")}
        try:
            # keyed by video so one video's events stay ordered within a partition
            self._producer.send(self._topic, key=str(video_id), value=payload)
        except Exception:
            self._logger.warning(
                "failed to publish progress event",
                extra={"video_id": str(video_id), "topic": self._topic},
                exc_info=True,
            )

    def close(self) -> None:
        try:
            self._producer.flush()
            self._producer.close()
        except Exception:
            self._logger.debug("progress event publisher close failed", exc_info=True)
