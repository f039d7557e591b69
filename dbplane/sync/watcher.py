# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import logging
import queue
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)

_STOP = object()


class ChangeFeedWatcher:
    """
    Follows the change stream of one source collection for one index.

    A reader thread pulls events into a bounded queue and a single writer
    thread applies them in order. A full queue blocks the reader, which
    throttles the stream instead of dropping events.
    """

    def __init__(
        self,
        index_id: str,
        open_stream: Callable[[], object],
        apply_change: Callable[[dict], None],
        on_closed: Callable[["ChangeFeedWatcher"], None] = None,
        queue_size: int = 1000,
        cluster_id: str = None,
    ):
        self.index_id = index_id
        self.cluster_id = cluster_id
        self._open_stream = open_stream
        self._apply_change = apply_change
        self._on_closed = on_closed
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._stopping = threading.Event()
        self._stream = None
        self._reader: Optional[threading.Thread] = None
        self._writer: Optional[threading.Thread] = None
        self.applied = 0
        self.failed = 0

    def start(self):
        # Opened here so setup errors reach the caller
        self._stream = self._open_stream()
        self._writer = threading.Thread(target=self._write_loop, name=f"watcher-writer-{self.index_id}", daemon=True)
        self._reader = threading.Thread(target=self._read_loop, name=f"watcher-reader-{self.index_id}", daemon=True)
        self._writer.start()
        self._reader.start()
        logger.info(f"Started change feed watcher for index {self.index_id}")

    @property
    def running(self) -> bool:
        return self._reader is not None and self._reader.is_alive()

    def stop(self, timeout: float = 10.0):
        self._stopping.set()
        for thread in (self._reader, self._writer):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout)
        logger.info(f"Stopped change feed watcher for index {self.index_id}")

    def _enqueue(self, item) -> bool:
        while not self._stopping.is_set():
            try:
                self._queue.put(item, timeout=0.5)
                return True
            except queue.Full:
                continue
        return False

    def _read_loop(self):
        failed = False
        try:
            while not self._stopping.is_set() and self._stream.alive:
                change = self._stream.try_next()
                if change is None:
                    continue
                if not self._enqueue(change):
                    break
        except Exception as e:
            if not self._stopping.is_set():
                failed = True
                logger.error(f"Change stream for index {self.index_id} failed: {e}")
        finally:
            try:
                self._stream.close()
            except Exception as e:
                logger.debug(f"Closing change stream for index {self.index_id}: {e}")
            # The writer drains what was read before it sees the marker
            self._queue.put(_STOP)

        if not self._stopping.is_set():
            if not failed:
                logger.warning(f"Change stream for index {self.index_id} ended")
            if self._on_closed:
                self._on_closed(self)

    def _write_loop(self):
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            try:
                self._apply_change(item)
                self.applied += 1
            except Exception as e:
                self.failed += 1
                logger.warning(
                    f"Failed to apply {item.get('operationType')} event for index {self.index_id}: {e}"
                )
