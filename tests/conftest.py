import os
import stat
from pathlib import Path
from typing import Dict, Optional, Tuple

import pytest

import multi_speedtest
from multi_speedtest import RunConfig

TIMESTAMP = "20260101_120000"

LISTING = """Retrieving speedtest.net configuration...
 1001) Provider A (Berlin, Germany) [10.00 km]
 1002) Provider B (Hamburg, Germany) [250.10 km]
 1003) Provider C (Munich, Germany) [500.00 km]
"""


def simple_output(download: str, upload: str) -> str:
    return f"Ping: 12.345 ms\nDownload: {download} Mbit/s\nUpload: {upload} Mbit/s\n"


def write_fake_tool(
    bin_dir: Path,
    listing: str = LISTING,
    results: Optional[Dict[str, Tuple[int, str]]] = None,
    list_rc: int = 0,
    name: str = "speedtest-cli",
    scripts: Optional[Dict[str, str]] = None,
) -> Path:
    """
    Writes a shell stand-in for speedtest-cli; every call is logged to calls.log.

    `results` maps a server id to (exit code, stdout text); `scripts` maps an id
    to raw shell lines run for that server instead.
    """
    results = results or {}
    branches = []
    for server_id, (rc, text) in results.items():
        branches.append(f"  {server_id})\ncat <<'OUT'\n{text}OUT\nexit {rc};;")
    for server_id, body in (scripts or {}).items():
        branches.append(f"  {server_id})\n{body}\n;;")
    script = "\n".join(
        [
            "#!/bin/sh",
            f'echo "$@" >> "{bin_dir / "calls.log"}"',
            'if [ "$1" = "--list" ]; then',
            f"cat <<'OUT'\n{listing}OUT",
            f"exit {list_rc}",
            "fi",
            'case "$2" in',
            *branches,
            "  *)",
            "echo 'ERROR: No matched servers'",
            "exit 1;;",
            "esac",
            "",
        ]
    )
    bin_dir.mkdir(parents=True, exist_ok=True)
    tool = bin_dir / name
    tool.write_text(script, encoding="utf-8")
    tool.chmod(tool.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return tool


def read_calls(bin_dir: Path):
    path = bin_dir / "calls.log"
    if not path.exists():
        return []
    return path.read_text(encoding="utf-8").splitlines()


@pytest.fixture
def bin_dir(tmp_path: Path, monkeypatch) -> Path:
    """Empty directory put in front of PATH."""
    d = tmp_path / "bin"
    d.mkdir()
    monkeypatch.setenv("PATH", str(d) + os.pathsep + os.environ.get("PATH", ""))
    return d


@pytest.fixture
def no_sleep(monkeypatch):
    calls = []
    monkeypatch.setattr(multi_speedtest.time, "sleep", lambda s: calls.append(s))
    return calls


@pytest.fixture
def config(tmp_path: Path) -> RunConfig:
    cfg = RunConfig(
        timestamp=TIMESTAMP,
        hostname="testhost",
        results_root=tmp_path / "results",
        color=False,
        quiet=True,
        log_path=tmp_path / "run.log",
    )
    cfg.results_dir.mkdir(parents=True)
    return cfg
