from __future__ import annotations

import time


class ProgressSink:
    """Fire-and-forget progress/status receiver. The base class ignores everything."""

    def report_progress(self, current: int, total: int) -> None:
        pass

    def report_status(self, text: str) -> None:
        pass


NULL_PROGRESS = ProgressSink()


class PrintProgress(ProgressSink):
    """Print status lines, stage timings and coarse progress to stdout."""

    def __init__(self, prefix: str = "", step_percent: int = 25):
        self.prefix = prefix
        self.step_percent = max(1, int(step_percent))
        self._t0 = time.time()
        self._last = -1

    def report_status(self, text: str) -> None:
        print(f"{self.prefix}[{time.time() - self._t0:8.2f}s] {text}")
        self._last = -1

    def report_progress(self, current: int, total: int) -> None:
        if total <= 0:
            return
        pct = int(100 * current / total)
        bucket = pct // self.step_percent
        if bucket != self._last:
            self._last = bucket
            print(f"{self.prefix}  {pct:3d}% ({current}/{total})")


def sink(progress) -> ProgressSink:
    return NULL_PROGRESS if progress is None else progress
