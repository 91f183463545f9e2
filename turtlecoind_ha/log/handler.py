import sys
import socket
import logging
import threading
import requests
from collections import deque
from typing import Any, Deque, Dict, List, Optional

LOKI_PUSH_PATH = "/loki/api/v1/push"
LOKI_JOB = "turtlecoind-ha"


class LokiHandler(logging.Handler):
    """
    Ships supervisor logs and daemon console lines to Grafana Loki.

    Records are queued and pushed in batches, either when `batch_size`
    records are waiting or every `flush_interval` seconds from a background
    thread. Each stream is labelled with its `source`: "daemon" for
    TurtleCoind's own console output, "supervisor" for everything else.
    """

    def __init__(self, url: str, org_id: Optional[str] = None, flush_interval: float = 10, batch_size: int = 100):
        """
        :param url: Base URL of the Loki server.
        :param org_id: Tenant sent as 'X-Scope-OrgID', if any.
        :param flush_interval: Seconds between background pushes.
        :param batch_size: Queue length that triggers an immediate push.
        """
        super().__init__()
        self.push_url = url.rstrip('/') + LOKI_PUSH_PATH
        self.org_id = org_id
        self.flush_interval = flush_interval
        self.batch_size = batch_size
        self.hostname = socket.gethostname()
        self.pending: Deque[Dict[str, Any]] = deque()
        self.pending_lock = threading.Lock()

        self.stop_event = threading.Event()
        self.pusher = threading.Thread(target=self._push_periodically, daemon=True, name="LokiPusher")
        self.pusher.start()

    def _push_periodically(self) -> None:
        while not self.stop_event.wait(self.flush_interval):
            self.flush()
        self.flush()

    def _labels(self, record: logging.LogRecord) -> Dict[str, str]:
        from_daemon = record.name.startswith('proc.')
        return {
            "job": LOKI_JOB,
            "source": "daemon" if from_daemon else "supervisor",
            "level": record.levelname.lower(),
            "hostname": self.hostname,
            "logger": record.name.rsplit('.', 1)[-1] if from_daemon else record.name,
        }

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = {
                "stream": self._labels(record),
                "values": [[str(int(record.created * 1e9)), self.format(record)]],
            }
            with self.pending_lock:
                self.pending.append(entry)
                batch_ready = len(self.pending) >= self.batch_size
            if batch_ready:
                self.flush()
        except Exception:
            self.handleError(record)

    def _drain(self) -> List[Dict[str, Any]]:
        with self.pending_lock:
            entries = list(self.pending)
            self.pending.clear()
        return entries

    def flush(self) -> None:
        """Pushes every queued entry. The HTTP call is made without holding the queue lock."""
        entries = self._drain()
        if not entries:
            return

        headers = {'Content-Type': 'application/json'}
        if self.org_id:
            headers['X-Scope-OrgID'] = self.org_id
        try:
            response = requests.post(self.push_url, json={"streams": entries}, headers=headers, timeout=5)
        except requests.RequestException as e:
            # Logging from here would feed back into this handler.
            print(f"CRITICAL: Failed to send {len(entries)} logs to Loki: {e}", file=sys.stderr)
            return
        if response.status_code != 204:
            print(f"ERROR: Loki rejected {len(entries)} logs: {response.status_code} - {response.text}", file=sys.stderr)

    def close(self) -> None:
        """Stops the pusher thread after a last push."""
        self.stop_event.set()
        if self.pusher.is_alive():
            self.pusher.join(timeout=self.flush_interval + 2)
        super().close()
