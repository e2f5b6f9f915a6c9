"""Total progress aggregation for streaming engine operations.

Pull and push operations report progress per layer. This module folds those
events into a single percentage so the build log can show one progress value
per image.
"""

from __future__ import annotations

from collections.abc import Callable

from cnb_imagegen.engine.api import ProgressEvent

PULL_STAGES = ("Downloading", "Extracting")
PUSH_STAGES = ("Pushing",)

# Statuses that finish a single stage of a layer
_STAGE_COMPLETE = {
    "Download complete": "Downloading",
    "Verifying Checksum": "Downloading",
}

# Statuses that finish every stage of a layer
_LAYER_COMPLETE = {
    "Pull complete",
    "Already exists",
    "Pushed",
    "Layer already exists",
}

# Statuses that announce a layer before progress starts
_LAYER_STARTED = {"Pulling fs layer", "Waiting", "Preparing"}


class TotalProgressListener:
    """Update listener reporting the overall percentage to a consumer.

    The consumer is called with an integer percentage (0-100) whenever the
    value changes.
    """

    def __init__(
        self,
        consumer: Callable[[int], None],
        stages: tuple[str, ...] = PULL_STAGES,
    ) -> None:
        self._consumer = consumer
        self._stages = stages
        self._layers: dict[str, dict[str, int]] = {}
        self._last: int | None = None

    @classmethod
    def for_pull(cls, consumer: Callable[[int], None]) -> TotalProgressListener:
        """Listener tracking download and extraction."""
        return cls(consumer, PULL_STAGES)

    @classmethod
    def for_push(cls, consumer: Callable[[int], None]) -> TotalProgressListener:
        """Listener tracking upload."""
        return cls(consumer, PUSH_STAGES)

    def on_start(self) -> None:
        self._emit(0)

    def on_update(self, event: ProgressEvent) -> None:
        if not event.id or not event.status:
            return
        status = event.status
        tracked = (
            status in self._stages
            or status in _STAGE_COMPLETE
            or status in _LAYER_COMPLETE
            or status in _LAYER_STARTED
        )
        if not tracked:
            return
        layer = self._layers.setdefault(event.id, dict.fromkeys(self._stages, 0))
        if status in self._stages:
            detail = event.progress_detail
            if detail and detail.total and detail.current is not None:
                layer[status] = min(100, detail.current * 100 // detail.total)
        elif status in _STAGE_COMPLETE:
            stage = _STAGE_COMPLETE[status]
            if stage in layer:
                layer[stage] = 100
        elif status in _LAYER_COMPLETE:
            for stage in layer:
                layer[stage] = 100
        self._emit(self._total())

    def on_finish(self) -> None:
        for layer in self._layers.values():
            for stage in layer:
                layer[stage] = 100
        self._emit(100)

    def _total(self) -> int:
        if not self._layers:
            return 0
        per_layer = [sum(stages.values()) // len(stages) for stages in self._layers.values()]
        return sum(per_layer) // len(per_layer)

    def _emit(self, percent: int) -> None:
        if percent != self._last:
            self._last = percent
            self._consumer(percent)


__all__ = ["PULL_STAGES", "PUSH_STAGES", "TotalProgressListener"]
