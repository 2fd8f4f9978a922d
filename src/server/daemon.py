"""Ingress daemon management.

Double-fork daemonization, PID file handling, and a startup gate that
waits until the ingress answers on its port before the parent returns.
"""

import http.client
import logging
import os
import select
import signal
import sys
import time
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# FHS paths
PID_DIR = Path("/var/run/headgate")
LOG_DIR = Path("/var/log/headgate")
DEFAULT_LOG_FILE = LOG_DIR / "headgate.log"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Answers that mean the ingress is up but cannot reach its backend
GATEWAY_FAILURE_STATUSES = frozenset({502, 503, 504})


class PidFile:
    """PID file for one ingress instance, qualified by port."""

    def __init__(self, port: int, directory: Optional[Path] = None):
        self.port = port
        self.path = (directory or PID_DIR) / f"headgate-{port}.pid"

    def read(self) -> Optional[int]:
        """PID recorded in the file, or None if absent or unreadable."""
        try:
            return int(self.path.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def write(self, pid: int):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(str(pid))

    def remove(self):
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


def get_pid_file(port: int) -> Path:
    """Return PID file path for given port."""
    return PidFile(port).path


def process_alive(pid: int) -> bool:
    """Check if process with given PID exists."""
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # exists, owned by someone else


def probe_host(bind: str) -> str:
    """Address to probe for a listener bound to `bind`."""
    if bind in ("", "0.0.0.0"):
        return "127.0.0.1"
    if bind == "::":
        return "::1"
    return bind


def health_check(port: int, host: str = "127.0.0.1", timeout: float = 2.0) -> bool:
    """Probe the ingress with a plain request.

    Every path belongs to the backend, so any answer other than a gateway
    failure means both the ingress and its backend are serving.
    """
    conn = http.client.HTTPConnection(host, port, timeout=timeout)
    try:
        conn.request("GET", "/", headers={"User-Agent": "headgate-health"})
        response = conn.getresponse()
        response.read()
    except (OSError, http.client.HTTPException) as e:
        logger.debug("Health check on %s:%d failed: %s", host, port, e)
        return False
    finally:
        conn.close()
    return response.status not in GATEWAY_FAILURE_STATUSES


def check_status(port: int, host: str = "127.0.0.1") -> dict:
    """Check daemon status.

    Returns:
        Dict with keys: running (bool), pid (int|None), healthy (bool).
    """
    pid_file = PidFile(port)
    pid = pid_file.read()

    if pid is None:
        return {"running": False, "pid": None, "healthy": False}

    if not process_alive(pid):
        pid_file.remove()
        return {"running": False, "pid": None, "healthy": False}

    return {"running": True, "pid": pid, "healthy": health_check(port, host)}


def kill_process(pid: int, timeout: float = 5.0) -> bool:
    """SIGTERM, then SIGKILL after timeout.

    Returns True if the process is gone.
    """
    for sig, wait in ((signal.SIGTERM, timeout), (signal.SIGKILL, 0.5)):
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            return True
        deadline = time.monotonic() + wait
        while time.monotonic() < deadline:
            if not process_alive(pid):
                return True
            time.sleep(0.1)
    return not process_alive(pid)


def _redirect_stdio(log_file: Path):
    log_fd = os.open(str(log_file), os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
    os.dup2(log_fd, sys.stdout.fileno())
    os.dup2(log_fd, sys.stderr.fileno())
    os.close(log_fd)

    devnull = os.open(os.devnull, os.O_RDONLY)
    os.dup2(devnull, sys.stdin.fileno())
    os.close(devnull)

    # Handlers created before the fork hold the old stderr
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    root_logger.addHandler(handler)


def daemonize(
    server_factory: Callable,
    port: int,
    host: str = "127.0.0.1",
    log_file: Optional[Path] = None,
) -> int:
    """Double-fork daemonization with health-check gate.

    Args:
        server_factory: Callable returning a started Server; called in the
            daemon process after the second fork
        port: Port the ingress listens on (PID file and health check)
        host: Address to health-check
        log_file: Daemon stdout/stderr. Defaults to the FHS path.

    Returns:
        Exit code: 0 = daemon started (or already healthy), 1 = error.
    """
    pid_file = PidFile(port)
    log_file = log_file or DEFAULT_LOG_FILE

    status = check_status(port, host)
    if status["running"] and status["healthy"]:
        print(f"Ingress already running (PID {status['pid']}, port {port})")
        return 0
    if status["running"]:
        logger.warning("Killing unhealthy ingress (PID %d)", status["pid"])
        kill_process(status["pid"])
        pid_file.remove()

    PID_DIR.mkdir(parents=True, exist_ok=True)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    read_fd, write_fd = os.pipe()

    if os.fork() > 0:
        os.close(write_fd)
        return _parent_wait(read_fd, port, host)

    os.setsid()
    if os.fork() > 0:
        os._exit(0)

    # Daemon process
    os.close(read_fd)
    os.chdir("/")
    os.umask(0o022)
    _redirect_stdio(log_file)

    try:
        server = server_factory()
    except Exception as e:
        logger.error("Failed to start ingress: %s", e)
        os.write(write_fd, b"error\n")
        os.close(write_fd)
        os._exit(1)

    pid_file.write(os.getpid())

    def _handle_sigterm(signum, frame):
        logger.info("Received SIGTERM, shutting down")
        pid_file.remove()
        os._exit(0)

    signal.signal(signal.SIGTERM, _handle_sigterm)

    os.write(write_fd, b"ready\n")
    os.close(write_fd)
    logger.info("Daemon started (PID %d, port %d)", os.getpid(), port)

    try:
        server.serve_forever()
    except Exception as e:
        logger.error("Ingress error: %s", e)
    finally:
        pid_file.remove()
    os._exit(0)


def _parent_wait(read_fd: int, port: int, host: str, timeout: float = 10.0) -> int:
    """Wait for the daemon's ready signal, then for a healthy answer.

    Returns:
        Exit code: 0 = success, 1 = error.
    """
    # Reap the intermediate child
    os.wait()

    ready, _, _ = select.select([read_fd], [], [], timeout)
    if not ready:
        os.close(read_fd)
        print("Error: Timed out waiting for ingress to start", file=sys.stderr)
        return 1

    data = os.read(read_fd, 64).decode().strip()
    os.close(read_fd)
    if data != "ready":
        print(f"Error: Ingress failed to start: {data}", file=sys.stderr)
        return 1

    for _ in range(10):
        if health_check(port, host):
            print(f"Ingress started (PID {PidFile(port).read()}, port {port})")
            return 0
        time.sleep(0.2)

    # Listening, but the backend is not answering yet
    print(
        f"Warning: Ingress started on port {port} but backend is not healthy",
        file=sys.stderr,
    )
    return 1


def stop_daemon(port: int) -> bool:
    """Stop daemon by PID file.

    Returns:
        True if the ingress was stopped (or wasn't running).
    """
    pid_file = PidFile(port)
    pid = pid_file.read()
    if pid is None:
        return True
    success = kill_process(pid) if process_alive(pid) else True
    pid_file.remove()
    return success
