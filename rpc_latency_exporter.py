import re
import time
import yaml
import logging
import requests
import threading
import sys
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Callable, List, NamedTuple, Optional, Union
from urllib.parse import urlparse

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram
from prometheus_client import start_http_server
from pythonjsonlogger import jsonlogger

logger = logging.getLogger("rpc_latency_exporter")

# 10ms, 20ms, ... ~5.12s, then +Inf
LATENCY_BUCKETS = tuple(0.01 * 2**i for i in range(10))

HEX_QUANTITY = re.compile(r"0x[0-9a-fA-F]+")

DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_ERROR_BACKOFF = 3.0
DEFAULT_REQUEST_TIMEOUT = 10.0


class ExporterError(Exception):
    """Base class for all exporter errors."""


class ConfigError(ExporterError):
    """Endpoint list missing, unreadable or malformed."""


class MetricsServerError(ExporterError):
    """An HTTP server could not bind or serve."""


class RpcError(ExporterError):
    pass


class RpcConnectionError(RpcError):
    """Client could not be established for an endpoint URL."""


class RpcQueryError(RpcError):
    """A JSON-RPC request failed or returned an unusable answer."""


def setup_logging(log_format="text", log_level="INFO"):
    level = getattr(logging, str(log_level).upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    handler = logging.StreamHandler(sys.stdout)
    if log_format == "json":
        fmt = jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    else:
        fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    handler.setFormatter(fmt)
    # Remove all handlers associated with the root logger object.
    for h in root_logger.handlers[:]:
        root_logger.removeHandler(h)
    root_logger.addHandler(handler)


class Endpoint(NamedTuple):
    name: str
    url: str


# Config loader with normalization
def load_config(path):
    try:
        with open(path, "r") as f:
            raw_config = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Failed to read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse {path}: {e}") from e
    return normalize_config(raw_config)


def normalize_config(config):
    """
    Validate the raw YAML document and fill in defaults.

    Endpoints may be given as mappings or as bare URLs:

      rpc_endpoints:
        - name: ankr
          url: https://rpc.ankr.com/eth
        - https://eth.llamarpc.com

    A missing name falls back to the URL's host. The first entry is the
    reference endpoint used for block detection.
    """
    if not isinstance(config, dict):
        raise ConfigError("Config must be a mapping with an 'rpc_endpoints' list")

    raw_endpoints = config.get("rpc_endpoints")
    if not isinstance(raw_endpoints, list):
        raise ConfigError("'rpc_endpoints' must be a list")
    if not raw_endpoints:
        raise ConfigError("'rpc_endpoints' is empty, nothing to monitor")

    endpoints = []
    for index, entry in enumerate(raw_endpoints):
        if isinstance(entry, str):
            url, name = entry, None
        elif isinstance(entry, dict):
            url, name = entry.get("url"), entry.get("name")
        else:
            raise ConfigError(f"rpc_endpoints[{index}] must be a URL or a mapping")

        if not url or not isinstance(url, str):
            raise ConfigError(f"rpc_endpoints[{index}] has no url")
        if not name:
            name = urlparse(url).hostname or url
        endpoints.append(Endpoint(str(name), url))

    try:
        normalized = {
            "endpoints": tuple(endpoints),
            "poll_interval": float(config.get("poll_interval", DEFAULT_POLL_INTERVAL)),
            "error_backoff": float(config.get("error_backoff", DEFAULT_ERROR_BACKOFF)),
            "request_timeout": float(
                config.get("request_timeout", DEFAULT_REQUEST_TIMEOUT)
            ),
            "log_format": config.get("log_format", "text"),
            "log_level": config.get("log_level", "INFO"),
        }
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid numeric setting: {e}") from e

    return normalized


class LatencyRecorder:
    """Owns the exporter's metrics and the registry they are served from."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()
        self.latency = Histogram(
            "ethereum_rpc_latency_seconds",
            "Latency of Ethereum RPC requests",
            ["rpc_name", "rpc_url"],
            buckets=LATENCY_BUCKETS,
            registry=self.registry,
        )
        self.failures = Counter(
            "ethereum_rpc_probe_failures_total",
            "Probes that produced no latency sample",
            ["rpc_name", "rpc_url", "stage"],  # "connect" or "query"
            registry=self.registry,
        )
        self.block_number = Gauge(
            "ethereum_latest_block_number",
            "Latest block number seen on the reference endpoint",
            registry=self.registry,
        )

    def record(self, name: str, url: str, seconds: float):
        self.latency.labels(rpc_name=name, rpc_url=url).observe(seconds)

    def record_failure(self, name: str, url: str, stage: str):
        self.failures.labels(rpc_name=name, rpc_url=url, stage=stage).inc()

    def set_block_number(self, height: int):
        self.block_number.set(height)

    def sample_count(self, name: str, url: str) -> float:
        value = self.registry.get_sample_value(
            "ethereum_rpc_latency_seconds_count", {"rpc_name": name, "rpc_url": url}
        )
        return value or 0.0


class RpcClient:
    """Minimal Ethereum JSON-RPC client over HTTP(S)."""

    def __init__(self, url: str, timeout: Optional[float] = DEFAULT_REQUEST_TIMEOUT):
        self.url = url
        self.timeout = timeout
        self.session = requests.Session()
        self._request_id = 0

    @classmethod
    def dial(cls, url: str, timeout: Optional[float] = DEFAULT_REQUEST_TIMEOUT):
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            raise RpcConnectionError(f"Unsupported scheme in {url!r}")
        if not parsed.netloc:
            raise RpcConnectionError(f"No host in {url!r}")
        return cls(url, timeout)

    def call(self, method: str, params=None):
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }
        try:
            resp = self.session.post(self.url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise RpcQueryError(f"{method} request to {self.url} failed: {e}") from e
        try:
            body = resp.json()
        except ValueError as e:
            raise RpcQueryError(f"{method} returned invalid JSON: {e}") from e

        if not isinstance(body, dict):
            raise RpcQueryError(f"{method} returned unexpected payload: {body!r}")
        if body.get("error"):
            raise RpcQueryError(f"{method} returned error: {body['error']}")
        if "result" not in body:
            raise RpcQueryError(f"{method} returned no result")
        return body["result"]

    def block_number(self) -> int:
        result = self.call("eth_blockNumber")
        # Quantities are unsigned, 0x-prefixed hex
        if not isinstance(result, str) or not HEX_QUANTITY.fullmatch(result):
            raise RpcQueryError(f"Invalid block number {result!r}")
        return int(result, 16)

    def close(self):
        self.session.close()


class ProbeResult(NamedTuple):
    height: int
    latency: float


class ProbeFailure(NamedTuple):
    stage: str
    error: RpcError


class EndpointProbe:
    """Times a single eth_blockNumber call against one endpoint."""

    def __init__(
        self,
        recorder: LatencyRecorder,
        client_factory: Callable = RpcClient.dial,
        request_timeout: Optional[float] = DEFAULT_REQUEST_TIMEOUT,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.recorder = recorder
        self.client_factory = client_factory
        self.request_timeout = request_timeout
        self.clock = clock

    def probe(self, endpoint: Endpoint) -> Union[ProbeResult, ProbeFailure]:
        try:
            client = self.client_factory(endpoint.url, self.request_timeout)
        except RpcConnectionError as e:
            logger.warning(f"Failed to connect to {endpoint.name} ({endpoint.url}): {e}")
            self.recorder.record_failure(endpoint.name, endpoint.url, "connect")
            return ProbeFailure("connect", e)

        # Connection setup is not charged to the latency sample
        start = self.clock()
        try:
            height = client.block_number()
            latency = self.clock() - start
        except RpcQueryError as e:
            logger.warning(
                f"Failed to fetch block number from {endpoint.name} ({endpoint.url}): {e}"
            )
            self.recorder.record_failure(endpoint.name, endpoint.url, "query")
            return ProbeFailure("query", e)
        finally:
            client.close()

        self.recorder.record(endpoint.name, endpoint.url, latency)
        logger.info(
            f"RPC {endpoint.name} ({endpoint.url}): block {height}, "
            f"latency {latency * 1000:.0f} ms"
        )
        return ProbeResult(height, latency)


class ChainHeadMonitor:
    """Polls the reference endpoint and probes every endpoint on each new block."""

    def __init__(
        self,
        endpoints,
        probe: EndpointProbe,
        recorder: Optional[LatencyRecorder] = None,
        client_factory: Callable = RpcClient.dial,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        error_backoff: float = DEFAULT_ERROR_BACKOFF,
        request_timeout: Optional[float] = DEFAULT_REQUEST_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.endpoints = tuple(endpoints)
        if not self.endpoints:
            raise ConfigError("At least one endpoint is required")
        self.reference = self.endpoints[0]
        self.probe = probe
        self.recorder = recorder
        self.client_factory = client_factory
        self.poll_interval = poll_interval
        self.error_backoff = error_backoff
        self.request_timeout = request_timeout
        self._sleep = sleep

        self._lock = threading.Lock()
        self._latest_height: Optional[int] = None
        self._client = None
        self.running = False

    @property
    def latest_height(self) -> Optional[int]:
        with self._lock:
            return self._latest_height

    def connect(self):
        """Dial the reference endpoint. Raises RpcConnectionError."""
        self._client = self.client_factory(self.reference.url, self.request_timeout)
        logger.info(
            f"Monitoring blocks via {self.reference.name} ({self.reference.url})"
        )

    def observe(self, height: int) -> bool:
        """Store height if it moves forward. True means a new block event."""
        with self._lock:
            previous = self._latest_height
            if previous is not None and height <= previous:
                return False
            self._latest_height = height

        if previous is None:
            logger.info(f"Starting at block {height}")
            return False
        logger.info(f"New block mined: {height}")
        return True

    def fan_out(self) -> List[threading.Thread]:
        threads = []
        for endpoint in self.endpoints:
            thread = threading.Thread(
                target=self.probe.probe,
                args=(endpoint,),
                name=f"probe-{endpoint.name}",
                daemon=True,
            )
            thread.start()
            threads.append(thread)
        return threads

    def poll_once(self) -> float:
        """Run one poll cycle and return the delay before the next one."""
        try:
            height = self._client.block_number()
        except RpcQueryError as e:
            logger.error(f"Failed to fetch latest block: {e}")
            return self.error_backoff

        if self.observe(height):
            self.fan_out()
        if self.recorder is not None:
            self.recorder.set_block_number(self.latest_height)
        return self.poll_interval

    def run(self):
        if self._client is None:
            self.connect()
        self.running = True
        while self.running:
            self._sleep(self.poll_once())

    def stop(self):
        self.running = False


def start_metrics_server(port: int, recorder: LatencyRecorder, addr: str = "0.0.0.0"):
    try:
        return start_http_server(port, addr=addr, registry=recorder.registry)
    except OSError as e:
        raise MetricsServerError(f"Cannot serve metrics on {addr}:{port}: {e}") from e


def run_healthz_server(monitor: ChainHeadMonitor, port=9091, addr="0.0.0.0"):
    class HealthzHandler(BaseHTTPRequestHandler):
        def do_GET(self):
            if self.path != "/healthz":
                self.send_response(404)
                self.end_headers()
                return
            if monitor.latest_height is None:
                status, body = 503, b"waiting for first block"
            else:
                status, body = 200, b"ok"
            self.send_response(status)
            self.send_header("Content-type", "text/plain")
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format, *args):
            return  # Silence default logging

    try:
        server = HTTPServer((addr, port), HealthzHandler)
    except OSError as e:
        raise MetricsServerError(f"Cannot serve healthz on {addr}:{port}: {e}") from e
    threading.Thread(target=server.serve_forever, daemon=True).start()
    return server


def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description="Ethereum RPC Latency Exporter")
    parser.add_argument("--config", default="config.yaml")
    parser.add_argument("--port", type=int, default=9090)
    parser.add_argument("--healthz-port", type=int, default=9091)
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args(argv)

    setup_logging()
    try:
        config = load_config(args.config)
        setup_logging(config["log_format"], args.log_level or config["log_level"])
        logger.info(f"Loaded {len(config['endpoints'])} endpoints from {args.config}")

        recorder = LatencyRecorder()
        probe = EndpointProbe(recorder, request_timeout=config["request_timeout"])
        monitor = ChainHeadMonitor(
            config["endpoints"],
            probe,
            recorder=recorder,
            poll_interval=config["poll_interval"],
            error_backoff=config["error_backoff"],
            request_timeout=config["request_timeout"],
        )

        start_metrics_server(args.port, recorder)
        logger.info(f"Exporter running on :{args.port}/metrics")
        run_healthz_server(monitor, args.healthz_port)
        logger.info(f"Health endpoint running on :{args.healthz_port}/healthz")

        monitor.connect()
        monitor.run()
    except ExporterError as e:
        logger.critical(f"Fatal: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
