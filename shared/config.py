"""
Runtime configuration for coordinator and node processes.

Every setting comes from the environment so the same modules run unchanged
under a process supervisor, a container or the local cluster harness.
"""
import os
import logging

LOG_FORMAT = '%(asctime)s [%(name)s] %(message)s'


def env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


def env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


# ── Endpoint ─────────────────────────────────────────────────────────────────
COORD_HOST = os.environ.get('COORD_HOST', '127.0.0.1')
COORD_PORT = env_int('COORD_PORT', 5000)
CONNECT_RETRIES = env_int('CONNECT_RETRIES', 30)
CONNECT_DELAY = env_float('CONNECT_DELAY', 1.0)

# ── Timings (seconds) ────────────────────────────────────────────────────────
CHECKPOINT_DIR = os.environ.get('CHECKPOINT_DIR', '.')
CHECKPOINT_INTERVAL = env_float('CHECKPOINT_INTERVAL', 5.0)
THINK_TIME_MIN = env_float('THINK_TIME_MIN', 2.0)
THINK_TIME_MAX = env_float('THINK_TIME_MAX', 4.0)
REPLICATION_DELAY_MAX = env_float('REPLICATION_DELAY_MAX', 2.0)
CS_DELAY = env_float('CS_DELAY', 3.0)

# Unset means a granted critical section never expires.
LEASE_SECONDS = os.environ.get('LEASE_SECONDS')


def configure_logging(level: str = None):
    """Install the process-wide log format. Called once by each entry point."""
    level = level or os.environ.get('LOG_LEVEL', 'INFO')
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO),
                        format=LOG_FORMAT)
