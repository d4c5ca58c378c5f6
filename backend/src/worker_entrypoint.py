"""Worker entrypoint for Cloud Run.

Runs a health check server plus one Celery worker per lane (and beat for
the hourly cleanup). Each worker consumes only its lane's queue with the
lane's concurrency, so a burst on one lane never starves another.

Environment:
    PORT            Health server port (default 8080)
    WORKER_LANES    Comma-separated lanes to run (default: all)
    WORKER_BEAT     "0" disables the beat scheduler
"""

import logging
import os
import subprocess
import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer

from src.config import get_settings
from src.queue.policy import LANES, LanePolicy, build_lane_policies
from src.utils.log import configure_logging

logger = logging.getLogger(__name__)

_processes: dict[str, subprocess.Popen] = {}


def build_worker_commands(
    policies: dict[str, LanePolicy],
    lanes: tuple[str, ...] = LANES,
    with_beat: bool = True,
    log_level: str = "info",
) -> dict[str, list[str]]:
    """Celery command lines keyed by process name."""
    commands: dict[str, list[str]] = {}
    for lane in lanes:
        commands[lane] = [
            "celery",
            "-A", "src.celery_app",
            "worker",
            f"--loglevel={log_level}",
            "-Q", lane,
            f"--concurrency={policies[lane].concurrency}",
            "-n", f"{lane}@%h",
        ]
    if with_beat:
        commands["beat"] = ["celery", "-A", "src.celery_app", "beat", f"--loglevel={log_level}"]
    return commands


def dead_processes() -> list[str]:
    return [name for name, proc in _processes.items() if proc.poll() is not None]


class HealthHandler(BaseHTTPRequestHandler):
    """Reports 503 once any worker process has exited."""

    def do_GET(self):
        if self.path not in ("/health", "/"):
            self.send_response(404)
            self.end_headers()
            return
        dead = dead_processes()
        self.send_response(503 if dead else 200)
        self.send_header("Content-type", "text/plain")
        self.end_headers()
        self.wfile.write(f"DEAD: {','.join(dead)}".encode() if dead else b"OK")

    def log_message(self, format, *args):
        # Suppress access logs
        pass


def run_health_server():
    port = int(os.environ.get("PORT", 8080))
    server = HTTPServer(("0.0.0.0", port), HealthHandler)
    logger.info(f"Health server running on port {port}")
    server.serve_forever()


def run_workers() -> int:
    """Start every worker process and wait; returns the first non-zero exit code."""
    settings = get_settings()
    lanes_env = os.environ.get("WORKER_LANES", "")
    lanes = tuple(lane.strip() for lane in lanes_env.split(",") if lane.strip()) or LANES
    unknown = set(lanes) - set(LANES)
    if unknown:
        raise SystemExit(f"Unknown lanes in WORKER_LANES: {sorted(unknown)}")

    commands = build_worker_commands(
        build_lane_policies(settings),
        lanes,
        with_beat=os.environ.get("WORKER_BEAT", "1") != "0",
        log_level=settings.log_level.lower(),
    )
    for name, command in commands.items():
        logger.info(f"Starting {name}: {' '.join(command)}")
        _processes[name] = subprocess.Popen(command)

    try:
        while True:
            dead = dead_processes()
            if dead:
                code = next((_processes[n].returncode for n in dead if _processes[n].returncode), 0)
                logger.error(f"Worker processes exited: {dead}")
                return code or 1
            time.sleep(5)
    finally:
        for proc in _processes.values():
            if proc.poll() is None:
                proc.terminate()
        for proc in _processes.values():
            try:
                proc.wait(timeout=30)
            except subprocess.TimeoutExpired:
                proc.kill()


if __name__ == "__main__":
    configure_logging(get_settings().log_level)

    # Start health server in background thread
    health_thread = threading.Thread(target=run_health_server, daemon=True)
    health_thread.start()

    raise SystemExit(run_workers())
