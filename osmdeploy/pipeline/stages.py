"""
Parallel stage runner.

A stage splits its work items into chunks and runs them on a thread pool.
Each worker derives rows into its own RowBuffer and hands the buffer to the
stage's sink (the RowWriter during an import, a scratch buffer during a
diff). ``run`` returns only after every chunk has finished, which is the
barrier between stages.

Cancellation is cooperative: workers check the shared event before each
chunk, and the runner raises ImportCancelled once the in-flight chunks have
drained. A failing worker makes the remaining chunks of its stage no-ops
without setting the shared event.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from osmdeploy.exceptions import ImportCancelled
from osmdeploy.writer.rows import OutputRow, RowBuffer

logger = logging.getLogger(__name__)


@dataclass
class StageResult:
    name: str
    items: int
    rows: int
    elapsed: float


class StageRunner:
    def __init__(self, workers: int = 4, chunk_size: int = 1000, cancel_event: threading.Event | None = None):
        self.workers = max(1, workers)
        self.chunk_size = max(1, chunk_size)
        self.cancel_event = cancel_event or threading.Event()
        # set when a worker fails; local to the current stage
        self._failed = threading.Event()

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise ImportCancelled("import cancelled")

    def run(
        self,
        name: str,
        items: Sequence[Any],
        derive: Callable[[Any], list[OutputRow]],
        sink: Callable[[RowBuffer], None],
    ) -> StageResult:
        """
        Apply ``derive`` to every item and pass the rows, chunk by chunk, to
        ``sink``. Worker exceptions propagate after all chunks have settled.
        """
        self.check_cancelled()
        self._failed.clear()
        started = time.time()
        chunks = [items[i : i + self.chunk_size] for i in range(0, len(items), self.chunk_size)]
        row_count = 0
        first_error: BaseException | None = None

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix=f"stage-{name}"
        ) as executor:
            futures = [executor.submit(self._run_chunk, chunk, derive, sink) for chunk in chunks]
            for future in concurrent.futures.as_completed(futures):
                try:
                    row_count += future.result()
                except ImportCancelled:
                    continue
                except Exception as e:
                    if first_error is None:
                        logger.error("Stage %s failed: %s", name, e)
                        first_error = e
                        self._failed.set()

        if first_error is not None:
            raise first_error
        self.check_cancelled()

        result = StageResult(name, len(items), row_count, time.time() - started)
        logger.info(
            "Stage %s: %d elements -> %d rows in %.1fs",
            name,
            result.items,
            result.rows,
            result.elapsed,
        )
        return result

    def _run_chunk(self, chunk, derive, sink) -> int:
        self.check_cancelled()
        if self._failed.is_set():
            return 0
        buffer = RowBuffer()
        for item in chunk:
            buffer.extend(derive(item))
        sink(buffer)
        return len(buffer)
