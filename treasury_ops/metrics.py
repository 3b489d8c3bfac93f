"""
Prometheus Metrics Exporter module for cl-treasury-ops

Lightweight, thread-safe exporter built on the standard library http.server.
Gauges and counters with labels, served at /metrics in the Prometheus text
exposition format. All metric names are prefixed with 'cl_treasury_'.
"""

import socket
import threading
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Dict, Optional, Any


class MetricType:
    """Metric type constants."""
    GAUGE = "gauge"
    COUNTER = "counter"


class PrometheusExporter:
    """
    Usage:
        exporter = PrometheusExporter(port=9810, plugin=plugin)
        exporter.start_server()
        exporter.set_gauge(MetricNames.DAILY_LOSS_SATS, 1200)
        exporter.inc_counter(MetricNames.SCHEDULER_TICKS_TOTAL, 1, {"outcome": "executed"})
    """

    def __init__(self, port: int = 9810, plugin=None):
        self.port = port
        self.plugin = plugin
        self._lock = threading.Lock()

        # {name: {"type": ..., "help": ..., "values": {frozenset(labels): value}}}
        self._metrics: Dict[str, Dict[str, Any]] = {}

        self._server: Optional[HTTPServer] = None
        self._server_thread: Optional[threading.Thread] = None
        self._running = False

    def _log(self, message: str, level: str = 'info'):
        if self.plugin:
            self.plugin.log(message, level=level)

    def _entry(self, name: str, metric_type: str, help_text: str) -> Dict[str, Any]:
        if name not in self._metrics:
            self._metrics[name] = {"type": metric_type, "help": help_text, "values": {}}
        return self._metrics[name]

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
                  help_text: str = "") -> None:
        label_key = frozenset((labels or {}).items())
        with self._lock:
            self._entry(name, MetricType.GAUGE, help_text)["values"][label_key] = value

    def inc_counter(self, name: str, value: float = 1, labels: Optional[Dict[str, str]] = None,
                    help_text: str = "") -> None:
        label_key = frozenset((labels or {}).items())
        with self._lock:
            values = self._entry(name, MetricType.COUNTER, help_text)["values"]
            values[label_key] = values.get(label_key, 0) + value

    def get_metric(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        label_key = frozenset((labels or {}).items())
        with self._lock:
            if name in self._metrics:
                return self._metrics[name]["values"].get(label_key)
        return None

    def format_prometheus(self) -> str:
        lines = []
        with self._lock:
            for name, metric in sorted(self._metrics.items()):
                if metric.get("help"):
                    lines.append(f"# HELP {name} {metric['help']}")
                lines.append(f"# TYPE {name} {metric['type']}")
                for label_key, value in sorted(metric["values"].items(), key=lambda x: str(x[0])):
                    if label_key:
                        label_part = ", ".join(f'{k}="{v}"' for k, v in sorted(label_key))
                        lines.append(f"{name}{{{label_part}}} {value}")
                    else:
                        lines.append(f"{name} {value}")
                lines.append("")
        return "\n".join(lines)

    def _create_request_handler(self):
        exporter = self

        class MetricsHandler(BaseHTTPRequestHandler):

            def log_message(self, format, *args):
                pass

            def do_GET(self):
                try:
                    if self.path not in ('/', '/metrics'):
                        self.send_response(404)
                        self.send_header('Content-Type', 'text/plain')
                        self.end_headers()
                        self.wfile.write(b'Not Found. Try /metrics')
                        return
                    content = exporter.format_prometheus().encode('utf-8')
                    self.send_response(200)
                    self.send_header('Content-Type', 'text/plain; charset=utf-8')
                    self.send_header('Content-Length', str(len(content)))
                    self.end_headers()
                    self.wfile.write(content)
                except (BrokenPipeError, ConnectionResetError):
                    # Client went away mid-response
                    pass

        return MetricsHandler

    def start_server(self) -> bool:
        """Start the HTTP server in a background thread. False on failure."""
        if self._running:
            return True
        try:
            self._server = HTTPServer(('0.0.0.0', self.port), self._create_request_handler())
            self._server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        except OSError as e:
            self._log(f"Failed to start Prometheus server on port {self.port}: {e}", level='error')
            return False

        self._server_thread = threading.Thread(
            target=self._server.serve_forever, daemon=True, name="prometheus-exporter"
        )
        self._server_thread.start()
        self._running = True
        self._log(f"Prometheus metrics server started on port {self.port}")
        return True

    def stop_server(self):
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._running = False
            self._log("Prometheus metrics server stopped")

    def is_running(self) -> bool:
        return self._running


class MetricNames:
    """Standard metric names for cl-treasury-ops."""

    # Loss cap (Gauges)
    DAILY_LOSS_SATS = "cl_treasury_daily_loss_sats"
    DAILY_LOSS_CAP_SATS = "cl_treasury_daily_loss_cap_sats"

    # Liquidity health (Gauges)
    CHANNELS_BY_HEALTH = "cl_treasury_channels_by_health"

    # Scheduler (Counter)
    SCHEDULER_TICKS_TOTAL = "cl_treasury_scheduler_ticks_total"

    # System health (Gauges)
    SYSTEM_LAST_RUN_TIMESTAMP = "cl_treasury_system_last_run_timestamp_seconds"


METRIC_HELP = {
    MetricNames.DAILY_LOSS_SATS: "Rebalance fees paid in the trailing 24h in sats",
    MetricNames.DAILY_LOSS_CAP_SATS: "Configured daily loss cap in sats",
    MetricNames.CHANNELS_BY_HEALTH: "Active channels per liquidity health classification",
    MetricNames.SCHEDULER_TICKS_TOTAL: "Rebalance scheduler ticks by outcome",
    MetricNames.SYSTEM_LAST_RUN_TIMESTAMP: "Unix timestamp of last task run (for health monitoring)",
}
