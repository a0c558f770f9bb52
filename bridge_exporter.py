import os
import re
import sys
import time
import argparse
import threading
import subprocess
import requests
from dataclasses import dataclass
from socketserver import ThreadingMixIn
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server
from prometheus_client import CollectorRegistry, Gauge, make_wsgi_app
from typing import Any, Dict, List, Optional, Tuple

# =============================================================================
# CONFIGURATION
# =============================================================================

DEFAULT_LISTEN_PORT = os.getenv("BRIDGE_EXPORTER_PORT", "8380")
DEFAULT_ENDPOINT = os.getenv("BRIDGE_RPC_ENDPOINT", "http://localhost:26658")
DEFAULT_P2P_NETWORK = os.getenv("BRIDGE_P2P_NETWORK", "blockspacerace")
DEFAULT_POLL_INTERVAL = os.getenv("BRIDGE_POLL_INTERVAL", "5")
DEFAULT_REQUEST_TIMEOUT = os.getenv("BRIDGE_REQUEST_TIMEOUT", "10")
DEFAULT_CELESTIA_BIN = os.getenv("CELESTIA_BIN", "celestia")

# JSON-RPC methods
LOCAL_HEAD_METHOD = "header.LocalHead"
NETWORK_HEAD_METHOD = "header.NetworkHead"

JSONRPC_VERSION = "2.0"
JSONRPC_REQUEST_ID = 1

METRICS_PATH = "/metrics"

# Optional sign, ASCII decimal digits only
HEIGHT_PATTERN = re.compile(r"[+-]?[0-9]+")


@dataclass(frozen=True)
class Config:
    listen_port: int
    endpoint: str
    p2p_network: str
    poll_interval: float
    request_timeout: float
    celestia_bin: str


def parse_args(argv: Optional[List[str]] = None) -> Config:
    """
    Parse command line flags into a Config.
    Every flag accepts both "-listen.port" and "--listen.port" spellings,
    and defaults to the matching environment variable when set.
    """
    parser = argparse.ArgumentParser(description="Celestia bridge height exporter.")
    parser.add_argument(
        "-listen.port", "--listen.port",
        dest="listen_port",
        type=int,
        default=DEFAULT_LISTEN_PORT,
        help="Port to serve /metrics on. Default is 8380.",
    )
    parser.add_argument(
        "-endpoint", "--endpoint",
        dest="endpoint",
        default=DEFAULT_ENDPOINT,
        help="Bridge node JSON-RPC endpoint.",
    )
    parser.add_argument(
        "-p2p.network", "--p2p.network",
        dest="p2p_network",
        default=DEFAULT_P2P_NETWORK,
        help="P2P network passed to the auth token command.",
    )
    parser.add_argument(
        "-poll.interval", "--poll.interval",
        dest="poll_interval",
        type=float,
        default=DEFAULT_POLL_INTERVAL,
        help="Seconds to sleep between poll cycles.",
    )
    parser.add_argument(
        "-request.timeout", "--request.timeout",
        dest="request_timeout",
        type=float,
        default=DEFAULT_REQUEST_TIMEOUT,
        help="Timeout in seconds for each RPC request.",
    )
    parser.add_argument(
        "-celestia.bin", "--celestia.bin",
        dest="celestia_bin",
        default=DEFAULT_CELESTIA_BIN,
        help="Name or path of the celestia binary.",
    )
    args = parser.parse_args(argv)

    if not 0 < args.listen_port < 65536:
        parser.error(f"invalid listen.port: {args.listen_port}")
    if args.poll_interval < 0:
        parser.error(f"invalid poll.interval: {args.poll_interval}")
    if args.request_timeout <= 0:
        parser.error(f"invalid request.timeout: {args.request_timeout}")

    return Config(
        listen_port=args.listen_port,
        endpoint=args.endpoint,
        p2p_network=args.p2p_network,
        poll_interval=args.poll_interval,
        request_timeout=args.request_timeout,
        celestia_bin=args.celestia_bin,
    )

# =============================================================================
# PROMETHEUS METRICS
# =============================================================================

class BridgeMetrics:
    """Registry holding the two height gauges, shared by poller and server."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()

        self.local_height = Gauge(
            "bridge_local_height",
            "Local height of the Celestia node",
            registry=self.registry,
        )
        self.network_height = Gauge(
            "bridge_network_height",
            "Network height of the Celestia node",
            registry=self.registry,
        )

# =============================================================================
# AUTH TOKEN
# =============================================================================

def fetch_auth_token(p2p_network: str, celestia_bin: str = DEFAULT_CELESTIA_BIN) -> str:
    """
    Ask the celestia CLI for an admin token for the given network.
    Returns the trimmed output, or an empty string on failure.
    """
    cmd = [celestia_bin, "bridge", "auth", "admin", "--p2p.network", p2p_network]
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
    except OSError as exc:
        print(f"[ERROR] Failed to get auth token: {exc}", flush=True)
        return ""

    output = proc.stdout or ""
    if proc.returncode != 0:
        print(
            f"[ERROR] Failed to get auth token: exit status {proc.returncode}, output: {output.strip()}",
            flush=True,
        )
        return ""

    return output.strip()

# =============================================================================
# FETCH FUNCTIONS
# =============================================================================

def build_rpc_request(method: str) -> Dict[str, Any]:
    # id stays 1 for every call; the bridge node does not require uniqueness
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": JSONRPC_REQUEST_ID,
        "method": method,
        "params": [],
    }


def parse_height(payload: Any) -> Optional[int]:
    """
    Extract result.header.height from a decoded JSON-RPC response.
    Returns the height as int or None if any field is missing or malformed.
    """
    if not isinstance(payload, dict):
        print("[ERROR] Response is not a JSON object", flush=True)
        return None

    result = payload.get("result")
    if not isinstance(result, dict):
        print("[ERROR] result is not a map", flush=True)
        return None

    header = result.get("header")
    if not isinstance(header, dict):
        print("[ERROR] header is not a map", flush=True)
        return None

    height_str = header.get("height")
    if not isinstance(height_str, str):
        print("[ERROR] height is not a string", flush=True)
        return None

    if not HEIGHT_PATTERN.fullmatch(height_str):
        print(f"[ERROR] Failed to convert height to int: {height_str!r}", flush=True)
        return None

    return int(height_str)


class BridgeRPCClient:
    """JSON-RPC client for a single bridge node endpoint."""

    def __init__(
        self,
        endpoint: str,
        auth_token: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.endpoint = endpoint
        self.auth_token = auth_token
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()

    def get_height(self, method: str) -> Optional[int]:
        """
        Call a header.* RPC method and return the reported height.
        Returns None on any transport, status or parse failure.
        """
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.auth_token}",
        }
        try:
            response = self.session.post(
                self.endpoint,
                json=build_rpc_request(method),
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            print(f"[ERROR] Failed to execute {method} request to {self.endpoint}: {exc}", flush=True)
            return None

        if response.status_code != 200:
            print(f"[ERROR] Non-OK HTTP status for {method}: {response.status_code} {response.reason}", flush=True)
            return None

        try:
            data = response.json()
        except ValueError as exc:
            print(f"[ERROR] Failed to decode {method} response: {exc}", flush=True)
            return None

        return parse_height(data)

    def get_local_height(self) -> Optional[int]:
        return self.get_height(LOCAL_HEAD_METHOD)

    def get_network_height(self) -> Optional[int]:
        return self.get_height(NETWORK_HEAD_METHOD)

# =============================================================================
# UPDATE LOOP
# =============================================================================

class BridgeExporter:
    """Polls the bridge node and writes heights into BridgeMetrics."""

    def __init__(self, client: BridgeRPCClient, metrics: BridgeMetrics, poll_interval: float = 5.0):
        self.client = client
        self.metrics = metrics
        self.poll_interval = poll_interval

    def update_metrics(self) -> Tuple[Optional[int], Optional[int]]:
        """
        Run a single poll cycle.
        A height that could not be read leaves its gauge at the previous value.
        """
        local = self.client.get_local_height()
        network = self.client.get_network_height()

        if local is not None:
            self.metrics.local_height.set(local)
        if network is not None:
            self.metrics.network_height.set(network)

        if local is None or network is None:
            print(f"[WARN] Incomplete poll (local={local}, network={network}), keeping previous values", flush=True)

        return local, network

    def run(self, iterations: Optional[int] = None):
        """
        Poll forever, sleeping poll_interval after each cycle.
        iterations limits the number of cycles.
        """
        count = 0
        while iterations is None or count < iterations:
            try:
                self.update_metrics()
            except Exception as exc:
                print(f"[ERROR] Unexpected error during poll: {exc}", flush=True)
            count += 1
            time.sleep(self.poll_interval)

# =============================================================================
# MAIN
# =============================================================================

class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _SilentHandler(WSGIRequestHandler):
    def log_message(self, format, *args):
        pass


def create_metrics_app(metrics: BridgeMetrics):
    """WSGI app rendering the registry on /metrics, 404 everywhere else."""
    metrics_app = make_wsgi_app(metrics.registry)

    def app(environ, start_response):
        if environ.get("PATH_INFO", "") != METRICS_PATH:
            start_response("404 Not Found", [("Content-Type", "text/plain; charset=utf-8")])
            return [b"404 page not found\n"]
        return metrics_app(environ, start_response)

    return app


def start_metrics_server(port: int, metrics: BridgeMetrics) -> WSGIServer:
    """
    Serve /metrics for the given registry on a background thread.
    Exits the process if the port cannot be bound.
    """
    try:
        server = make_server(
            "",
            port,
            create_metrics_app(metrics),
            server_class=_ThreadingWSGIServer,
            handler_class=_SilentHandler,
        )
    except OSError as exc:
        print(f"[FATAL] Failed to start metrics server on port {port}: {exc}", flush=True)
        sys.exit(1)

    thread = threading.Thread(target=server.serve_forever, name="MetricsServer", daemon=True)
    thread.start()
    return server


def main(argv: Optional[List[str]] = None):
    """
    Start the metrics server, fetch the auth token and poll forever.
    """
    config = parse_args(argv)

    print("=" * 70)
    print("Celestia Bridge Exporter")
    print("=" * 70)
    print("Configuration:")
    print(f"  LISTEN_PORT: {config.listen_port}")
    print(f"  ENDPOINT: {config.endpoint}")
    print(f"  P2P_NETWORK: {config.p2p_network}")
    print(f"  POLL_INTERVAL: {config.poll_interval}s")
    print(f"  REQUEST_TIMEOUT: {config.request_timeout}s")
    print(f"  CELESTIA_BIN: {config.celestia_bin}")
    print("=" * 70, flush=True)

    metrics = BridgeMetrics()
    start_metrics_server(config.listen_port, metrics)
    print(f"[INFO] Celestia Bridge Exporter started on port {config.listen_port}", flush=True)

    auth_token = fetch_auth_token(config.p2p_network, config.celestia_bin)
    print(f"[INFO] Auth token: {'<set>' if auth_token else '<empty>'}", flush=True)

    client = BridgeRPCClient(config.endpoint, auth_token, timeout=config.request_timeout)
    exporter = BridgeExporter(client, metrics, poll_interval=config.poll_interval)

    try:
        exporter.run()
    except KeyboardInterrupt:
        print("[INFO] Interrupted, exiting", flush=True)


if __name__ == "__main__":
    main()
