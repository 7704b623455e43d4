import logging
import os
import socket
import time
import uuid
from pathlib import Path
from typing import Dict, Optional

import yaml


def load_config(path: Optional[str] = None) -> Dict:
    """Load and return application configuration with environment variable overrides."""
    config_path = Path(path) if path else Path(__file__).parent / "config.yml"
    with open(config_path, "r") as config_file:
        config = yaml.safe_load(config_file)

    port = os.environ.get("PORT")
    if port:
        config["app"]["port"] = int(port)

    log_level = os.environ.get("LOG_LEVEL")
    if log_level:
        config["logging"]["level"] = log_level.upper()

    capture_root = os.environ.get("CAPTURE_ROOT")
    if capture_root:
        config["storage"]["root"] = capture_root

    return config


def setup_logging(config: Dict) -> None:
    """Configure application logging."""
    log_cfg = config["logging"]
    handlers = [logging.StreamHandler()]
    if log_cfg.get("file"):
        log_path = Path(log_cfg["file"])
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    logging.basicConfig(
        level=log_cfg["level"],
        format=log_cfg["format"],
        handlers=handlers,
    )


def flush_logs() -> None:
    """Push buffered records of every root handler to their sinks."""
    for handler in logging.getLogger().handlers:
        handler.flush()


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_request_id() -> str:
    return f"req_{now_ms()}_{uuid.uuid4().hex[:9]}"


def find_available_port(start_port: int, host: str = "0.0.0.0", attempts: int = 100) -> int:
    """
    Return the first port >= start_port that can be bound on host.

    Raises OSError when none of the probed ports is free.
    """
    for port in range(start_port, start_port + attempts):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((host, port))
            except OSError:
                continue
            return port
    raise OSError(f"No free port in range {start_port}-{start_port + attempts - 1}")
