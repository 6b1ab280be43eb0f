from __future__ import annotations

import json
import logging
import threading
import time
from queue import Queue
from typing import Callable, Set
from uuid import UUID

try:
    from kafka import KafkaConsumer, KafkaProducer
except ImportError:  # pragma: no cover - optional dependency
    KafkaConsumer = None  # type: ignore
    KafkaProducer = None  # type: ignore

log = logging.getLogger(__name__)

Processor = Callable[[UUID], None]


class BaseQueue:
    """Hands video ids to ``processor`` (assets pass, then render) off the request thread."""

    def enqueue(self, video_id: UUID) -> bool: ...  # pragma: no cover

    def close(self) -> None:
        return None


def _process(processor: Processor, video_id: UUID) -> None:
    started = time.monotonic()
    try:
        processor(video_id)
    except Exception:
        log.exception("video processing failed", extra={"video_id": str(video_id)})
        return
    log.info(
        "video processed",
        extra={"video_id": str(video_id), "elapsed": round(time.monotonic() - started, 3)},
    )


class LocalQueue(BaseQueue):
    """In-process worker; videos run one at a time in arrival order.

    A video that is already waiting is not queued a second time.
    """

    def __init__(self, processor: Processor) -> None:
        self._processor = processor
        self._queue: Queue[UUID] = Queue()
        self._waiting: Set[UUID] = set()
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._run, name="video-worker", daemon=True)
        self._thread.start()

    def enqueue(self, video_id: UUID) -> bool:
        with self._lock:
            if video_id in self._waiting:
                return False
            self._waiting.add(video_id)
        self._queue.put(video_id)
        return True

    def join(self) -> None:
        self._queue.join()

    def _run(self) -> None:
        while True:
            video_id = self._queue.get()
            with self._lock:
                self._waiting.discard(video_id)
            try:
                _process(self._processor, video_id)
            finally:
                self._queue.task_done()


class KafkaQueue(BaseQueue):
    """Processing requests travel through a Kafka topic, keyed by video id."""

    def __init__(
        self,
        bootstrap_servers: str,
        topic: str,
        group_id: str,
        processor: Processor,
    ) -> None:
        if KafkaProducer is None or KafkaConsumer is None:
            raise RuntimeError("kafka-python is not installed")
        self._topic = topic
        self._processor = processor
        self._producer = KafkaProducer(
            bootstrap_servers=bootstrap_servers,
            key_serializer=lambda key: key.encode("utf-8"),
            value_serializer=lambda value: json.dumps(value).encode("utf-8"),
        )
        self._consumer = KafkaConsumer(
            topic,
            bootstrap_servers=bootstrap_servers,
            group_id=group_id,
            auto_offset_reset="earliest",
            enable_auto_commit=True,
            value_deserializer=lambda value: json.loads(value.decode("utf-8")),
        )
        self._thread = threading.Thread(target=self._consume, name="video-consumer", daemon=True)
        self._thread.start()

    def enqueue(self, video_id: UUID) -> bool:
        payload = {"video_id": str(video_id), "ts": time.time()}
        self._producer.send(self._topic, key=str(video_id), value=payload)
        self._producer.flush()
        return True

    def close(self) -> None:
        self._producer.close()
        self._consumer.close()

    def _consume(self) -> None:
        for message in self._consumer:
            try:
                video_id = UUID(message.value["video_id"])
            except (KeyError, TypeError, ValueError):
                log.warning("skipping malformed queue message", extra={"offset": message.offset})
                continue
            _process(self._processor, video_id)
