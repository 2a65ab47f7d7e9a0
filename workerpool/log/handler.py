import os
import sys
import socket
import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, Optional

import requests

from workerpool.config import effective_settings as config


class LokiHandler(logging.Handler):
    """
    A logging handler that sends logs to a Grafana Loki instance
    in batches using a background thread.
    """
    def __init__(
        self,
        url: str,
        org_id: Optional[str] = None,
        flush_interval: Optional[float] = None,
        batch_size: Optional[int] = None,
    ):
        """
        Initializes the Loki handler.

        :param url: The base URL of the Loki instance.
        :param org_id: The tenant ID for Loki (sent as 'X-Scope-OrgID').
        :param flush_interval: Seconds between background flushes.
        :param batch_size: Number of buffered entries that triggers an immediate flush.
        """
        super().__init__()
        self.url = f"{url.rstrip('/')}/loki/api/v1/push"
        self.org_id = org_id
        self.log_buffer: Deque[Dict[str, Any]] = deque()
        self.buffer_lock = threading.Lock()
        self.flush_interval = flush_interval if flush_interval is not None else config.LOG_BUFFER_FLUSH_INTERVAL
        self.batch_size = batch_size if batch_size is not None else config.LOG_BATCH_SIZE
        self.hostname = os.getenv('COMPUTERNAME') or os.getenv('HOSTNAME') or socket.gethostname()
        self.pid = os.getpid()

        self.stop_event = threading.Event()
        self.flush_thread = threading.Thread(target=self._periodic_flush, daemon=True)
        self.flush_thread.name = "LokiFlushThread"
        self.flush_thread.start()

    def _periodic_flush(self) -> None:
        """Periodically flushes the log buffer until the handler is closed."""
        while not self.stop_event.wait(self.flush_interval):
            self.flush()
        self.flush()

    def _build_entry(self, record: logging.LogRecord) -> Dict[str, Any]:
        """
        Turns a record into one Loki stream entry.

        Output captured from a spawned worker arrives on a `proc.worker-<id>`
        logger as a finished line; it is labelled with the worker and sent as is.
        Everything else is the supervisor's own logging and gets formatted.
        """
        if record.name.startswith('proc.'):
            role, logger_name, msg = "worker", record.name[len('proc.'):], record.getMessage()
        else:
            role, logger_name, msg = "supervisor", record.name, self.format(record)

        labels = {
            "job": "workerpool",
            "role": role,
            "level": record.levelname.lower(),
            "hostname": self.hostname,
            "logger": logger_name,
        }
        return {"stream": labels, "values": [[str(int(record.created * 1e9)), msg]]}

    def emit(self, record: logging.LogRecord) -> None:
        """Buffers a record, flushing once `batch_size` entries are waiting."""
        # A forked worker inherits this handler but not its flush thread.
        if os.getpid() != self.pid:
            return
        try:
            entry = self._build_entry(record)
            with self.buffer_lock:
                self.log_buffer.append(entry)
                should_flush = len(self.log_buffer) >= self.batch_size
            if should_flush:
                self.flush()
        except Exception:
            self.handleError(record)

    def _send(self, entries) -> None:
        payload = {"streams": entries}
        headers = {'Content-Type': 'application/json'}
        if self.org_id:
            headers['X-Scope-OrgID'] = self.org_id

        try:
            response = requests.post(self.url, json=payload, headers=headers, timeout=5)
            # 204 No Content is the success status for Loki push
            if response.status_code != 204:
                print(
                    f"ERROR: Loki returned non-204 status: {response.status_code} - {response.text}",
                    file=sys.stderr,
                )
        except requests.RequestException as e:
            print(f"CRITICAL: Failed to send {len(entries)} logs to Loki: {e}", file=sys.stderr)

    def flush(self) -> None:
        """Sends everything currently buffered. The network call runs outside the lock."""
        with self.buffer_lock:
            if not self.log_buffer:
                return
            entries = list(self.log_buffer)
            self.log_buffer.clear()
        self._send(entries)

    def close(self) -> None:
        """Shuts down the handler, flushing buffered logs and joining the flush thread."""
        self.stop_event.set()
        if self.flush_thread.is_alive():
            self.flush_thread.join(timeout=self.flush_interval + 2)
        super().close()
