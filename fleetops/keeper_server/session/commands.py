"""
Shell command lines issued inside a session.

All commands the keeper runs remotely are built here so the in-memory
session can recognise exactly the same strings.
"""

from __future__ import annotations

import shlex
from collections.abc import Iterable


def archive_command(archive_path: str, data_tree: str, excludes: Iterable[str]) -> str:
    """tar czf {archive} -C / --exclude=... {tree}"""
    parts = ["tar", "czf", archive_path, "-C", "/"]
    parts.extend(f"--exclude={pattern}" for pattern in excludes)
    parts.append(data_tree)
    return shlex.join(parts)


def extract_command(archive_path: str) -> str:
    return shlex.join(["tar", "xzf", archive_path, "-C", "/"])


def size_command(path: str) -> str:
    return f"stat -c%s {shlex.quote(path)}"


def read_chunk_command(path: str, chunk_bytes: int, index: int) -> str:
    """Read chunk `index` of a file, base64-encoded on one line."""
    return (
        f"dd if={shlex.quote(path)} bs={chunk_bytes} skip={index} count=1 2>/dev/null"
        " | base64 -w 0"
    )


def decode_command(source: str, target: str) -> str:
    return f"base64 -d {shlex.quote(source)} > {shlex.quote(target)}"


def remove_command(paths: Iterable[str]) -> str:
    return shlex.join(["rm", "-f", *paths])


def probe_command(port: int, timeout: float) -> str:
    """Print the HTTP status code of the gateway root, 000 if unreachable."""
    return (
        f"curl -s -o /dev/null -w '%{{http_code}}' --max-time {int(timeout)} "
        f"http://localhost:{port}/"
    )
