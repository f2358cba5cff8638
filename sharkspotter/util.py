from __future__ import annotations
import logging
import socket
from pathlib import Path
from typing import List, Optional, Sequence

logger = logging.getLogger("sharkspotter")

def setup_logger(level: str = "INFO", log_path: Optional[Path] = None) -> logging.Logger:
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.propagate = False

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(threadName)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if not logger.handlers:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger

def lookup_ip(host: str) -> str:
    """Resolve ``host`` and return its first address."""
    infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    if not infos:
        raise socket.gaierror(f"No address found for {host}")
    return infos[0][4][0]

def normalize_sharks(sharks: Sequence[str], domain: str) -> List[str]:
    """Qualify bare shark names (``1.stor``) with the cluster domain."""
    out: List[str] = []
    for shark in sharks:
        if domain in shark:
            out.append(shark)
            continue
        qualified = f"{shark}.{domain}"
        logger.warning(
            'Domain "%s" not found in storage node string:"%s", using "%s"',
            domain, shark, qualified,
        )
        out.append(qualified)
    return out

def shark_short_name(shark: str, domain: str) -> str:
    suffix = f".{domain}"
    return shark[: -len(suffix)] if shark.endswith(suffix) else shark
