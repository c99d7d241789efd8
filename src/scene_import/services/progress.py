"""
Progress reporting — one emitter interface, two delivery modes.

  JobStoreEmitter  — polling: writes stage / percentage / message onto the job row
  StreamEmitter    — streaming: pushes NDJSON-ready events onto a queue

Both share the same stage vocabulary and percentage ranges, and both clamp
so the reported percentage never goes backwards within a run.
"""
import json
import queue
import logging
from dataclasses import dataclass
from typing import Optional

from scene_import.models.import_job import ProcessingStage

logger = logging.getLogger(__name__)

STAGE_RANGES: dict[ProcessingStage, tuple[int, int]] = {
    ProcessingStage.VALIDATING : (0, 10),
    ProcessingStage.DOWNLOADING: (10, 30),
    ProcessingStage.EXTRACTING : (30, 70),
    ProcessingStage.PARSING    : (70, 95),
    ProcessingStage.FINALIZING : (95, 100),
}

STREAM_END = object()


def stage_percentage(stage: ProcessingStage, fraction: float = 0.0) -> int:
    low, high = STAGE_RANGES[stage]
    fraction = min(max(fraction, 0.0), 1.0)
    return int(round(low + (high - low) * fraction))


@dataclass
class ProgressEvent:
    stage: ProcessingStage
    percentage: int
    message: Optional[str] = None
    current: Optional[int] = None
    total: Optional[int] = None
    file_name: Optional[str] = None
    page: Optional[int] = None
    total_pages: Optional[int] = None

    def to_wire(self) -> dict:
        event = {"type": "progress", "stage": self.stage.value, "progress": round(self.percentage / 100, 4)}
        optional = {
            "message": self.message,
            "current": self.current,
            "total": self.total,
            "fileName": self.file_name,
            "page": self.page,
            "totalPages": self.total_pages,
        }
        event.update({k: v for k, v in optional.items() if v is not None})
        return event


class ProgressEmitter:
    def __init__(self):
        self._last_percentage = 0

    @property
    def last_percentage(self) -> int:
        return self._last_percentage

    def reset(self):
        self._last_percentage = 0

    def progress(
        self,
        stage: ProcessingStage,
        message: str | None = None,
        fraction: float = 0.0,
        *,
        current: int | None = None,
        total: int | None = None,
        file_name: str | None = None,
        page: int | None = None,
        total_pages: int | None = None,
    ) -> ProgressEvent:
        percentage = max(self._last_percentage, stage_percentage(stage, fraction))
        self._last_percentage = percentage
        event = ProgressEvent(
            stage=stage, percentage=percentage, message=message, current=current, total=total,
            file_name=file_name, page=page, total_pages=total_pages,
        )
        self._publish(event)
        return event

    def done(self, mode: str, draft: dict | None = None, scene_id: str | None = None):
        """Terminal success. No-op for emitters whose terminal state lives elsewhere."""

    def error(self, message: str, details: str | None = None):
        """Terminal failure."""

    def _publish(self, event: ProgressEvent):
        raise NotImplementedError


class NullEmitter(ProgressEmitter):
    def _publish(self, event: ProgressEvent):
        logger.debug("progress %s %d%% %s", event.stage.value, event.percentage, event.message or "")


class JobStoreEmitter(ProgressEmitter):
    """Polling mode — every event becomes a field write on the job row."""

    def __init__(self, store, job_id: str):
        super().__init__()
        self.store = store
        self.job_id = job_id

    def _publish(self, event: ProgressEvent):
        self.store.update(
            self.job_id,
            processing_stage    = event.stage,
            progress_percentage = event.percentage,
            status_message      = event.message,
        )


class StreamEmitter(ProgressEmitter):
    """
    Streaming mode — events go to a queue drained by the HTTP response.
    Exactly one terminal event (`done` or `error`) is emitted, followed by STREAM_END;
    anything published afterwards is dropped.
    """

    def __init__(self, events: "queue.Queue | None" = None):
        super().__init__()
        self.events = events if events is not None else queue.Queue()
        self.closed = False

    def _put(self, payload: dict):
        if self.closed:
            logger.debug("Dropping %s event after terminal event", payload.get("type"))
            return
        self.events.put(payload)

    def _publish(self, event: ProgressEvent):
        self._put(event.to_wire())

    def done(self, mode: str, draft: dict | None = None, scene_id: str | None = None):
        payload = {"type": "done", "mode": mode}
        if scene_id:
            payload["sceneId"] = scene_id
        if draft is not None:
            payload["draft"] = draft
        self._terminate(payload)

    def error(self, message: str, details: str | None = None):
        payload = {"type": "error", "error": message}
        if details:
            payload["details"] = details
        self._terminate(payload)

    def _terminate(self, payload: dict):
        if self.closed:
            return
        self._put(payload)
        self.closed = True
        self.events.put(STREAM_END)

    def iter_ndjson(self):
        """Blocking generator of NDJSON lines until the terminal event."""
        while True:
            item = self.events.get()
            if item is STREAM_END:
                return
            yield json.dumps(item, ensure_ascii=False) + "\n"
