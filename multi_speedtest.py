#!/usr/bin/env python3
"""
multi_speedtest.py

Runs `speedtest-cli` against several remote servers, one after another, to get a
broader picture than a single auto-selected server gives.

Flow:
1) Check that `speedtest-cli` is installed.
2) Fetch the server list (`speedtest-cli --list`) or take IDs from a file (-s).
3) Pick all servers, or N random ones (-n).
4) Run `speedtest-cli --server ID --simple` per server, pausing between runs.
5) Parse Download/Upload from every output file and write a summary.

This script has **zero third-party Python dependencies**.

Outputs (under speedtest_results/commu/<hostname>/ by default):
- servers_<ts>.txt, selected_servers_<ts>.txt
- speedtest_<id>_<ts>.txt per tested server
- summary_<ts>.txt
"""
from __future__ import annotations

import argparse
import dataclasses
import datetime as _dt
import json
import os
import platform
import random
import re
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple


APP_NAME = "multi_speedtest"
DEFAULT_TOOL = "speedtest-cli"
DEFAULT_RESULTS_ROOT = Path("speedtest_results") / "commu"
DEFAULT_LOG_PATH = Path.home() / f"{APP_NAME}.log"
DEFAULT_SLEEP_BETWEEN = 2.0
MAX_LISTED_SERVERS = 50
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

INSTALL_HINT = "Install it with: sudo apt-get install speedtest-cli (or: pip install speedtest-cli)"

SERVER_LINE_RE = re.compile(r"^\s*(\d+)\)\s*(.*)$")


# ----------------------------
# Utilities
# ----------------------------
def which(cmd: str) -> Optional[str]:
    return shutil.which(cmd)


def run_cmd(cmd: List[str], timeout_s: Optional[float] = 120) -> Tuple[int, str, str]:
    """Run a command safely and return (exit_code, stdout, stderr)."""
    try:
        p = subprocess.run(
            cmd,
            check=False,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout_s,
        )
        return p.returncode, p.stdout, p.stderr.strip()
    except FileNotFoundError:
        return 127, "", f"Command not found: {cmd[0]}"
    except subprocess.TimeoutExpired:
        return 124, "", f"Timeout after {timeout_s}s: {' '.join(cmd)}"


def now_iso() -> str:
    return _dt.datetime.now().astimezone().isoformat(timespec="seconds")


def make_timestamp() -> str:
    return _dt.datetime.now().strftime(TIMESTAMP_FORMAT)


def safe_float(x: Any) -> Optional[float]:
    try:
        if x is None:
            return None
        return float(x)
    except (TypeError, ValueError):
        return None


def write_jsonl(path: Path, obj: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(obj, ensure_ascii=False) + "\n")


def write_log(path: Path, line: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(line.rstrip() + "\n")


def ansi(color: str) -> str:
    colors = {
        "reset": "\033[0m",
        "bold": "\033[1m",
        "red": "\033[31m",
        "green": "\033[32m",
        "yellow": "\033[33m",
        "blue": "\033[34m",
    }
    return colors.get(color, "")


def supports_color() -> bool:
    return sys.stdout.isatty() and os.environ.get("NO_COLOR") is None


# ----------------------------
# Data models
# ----------------------------
@dataclass(frozen=True)
class ServerEntry:
    server_id: int
    description: str

    @property
    def line(self) -> str:
        return f"{self.server_id}) {self.description}".rstrip()


@dataclass
class SpeedResult:
    download_mbps: Optional[float]
    upload_mbps: Optional[float]
    download_raw: str
    upload_raw: str


@dataclass
class ServerReport:
    server_id: str
    label: str
    result: SpeedResult


@dataclass
class RunSummary:
    timestamp: str
    reports: List[ServerReport] = field(default_factory=list)
    failed: int = 0
    avg_download_mbps: Optional[float] = None
    avg_upload_mbps: Optional[float] = None

    @property
    def successful(self) -> int:
        return len(self.reports)


@dataclass
class RunConfig:
    """Everything one run needs; built once in main() and passed down."""

    timestamp: str
    hostname: str
    results_root: Path = DEFAULT_RESULTS_ROOT
    tool: str = DEFAULT_TOOL
    sleep_between: float = DEFAULT_SLEEP_BETWEEN
    max_servers: int = MAX_LISTED_SERVERS
    timeout_s: Optional[float] = None
    color: bool = True
    quiet: bool = False
    log_path: Optional[Path] = None
    jsonl_path: Optional[Path] = None

    @property
    def results_dir(self) -> Path:
        return self.results_root / self.hostname

    @property
    def servers_file(self) -> Path:
        return self.results_dir / f"servers_{self.timestamp}.txt"

    @property
    def selected_file(self) -> Path:
        return self.results_dir / f"selected_servers_{self.timestamp}.txt"

    @property
    def summary_file(self) -> Path:
        return self.results_dir / f"summary_{self.timestamp}.txt"

    @property
    def result_glob(self) -> str:
        return f"speedtest_*_{self.timestamp}.txt"

    def result_file(self, server_id: str) -> Path:
        return self.results_dir / f"speedtest_{server_id}_{self.timestamp}.txt"

    def server_id_from_result(self, path: Path) -> str:
        name = path.name
        return name[len("speedtest_"):-len(f"_{self.timestamp}.txt")]


# ----------------------------
# Console / log output
# ----------------------------
def maybe_c(s: str, color: str, enabled: bool = True) -> str:
    if enabled and supports_color():
        return f"{ansi(color)}{s}{ansi('reset')}"
    return s


def print_status(config: RunConfig, color: str, message: str) -> None:
    if not config.quiet:
        print(maybe_c(message, color, enabled=config.color))
    if config.log_path is not None:
        for line in message.strip("\n").splitlines():
            write_log(config.log_path, f"{now_iso()} [{config.timestamp}] {line}")


# ----------------------------
# Prerequisites / setup
# ----------------------------
def check_tool(config: RunConfig) -> bool:
    """Console-only on failure; nothing is logged or created before this passes."""
    if which(config.tool):
        return True
    if not config.quiet:
        print(maybe_c(f"Error: {config.tool} is not installed", "red", enabled=config.color))
    print(INSTALL_HINT)
    return False


def create_results_dir(config: RunConfig) -> Path:
    config.results_dir.mkdir(parents=True, exist_ok=True)
    return config.results_dir


# ----------------------------
# Server discovery
# ----------------------------
def parse_server_list(text: str, limit: int = MAX_LISTED_SERVERS) -> List[ServerEntry]:
    """
    Parses `speedtest-cli --list` output.

    Only lines shaped like "1234) Provider (City, Country) [12.34 km]" count;
    headers like "Retrieving speedtest.net configuration..." are skipped.
    """
    servers: List[ServerEntry] = []
    for raw in text.splitlines():
        m = SERVER_LINE_RE.match(raw)
        if not m:
            continue
        servers.append(ServerEntry(server_id=int(m.group(1)), description=m.group(2).strip()))
        if len(servers) >= limit:
            break
    return servers


def discover_servers(config: RunConfig) -> Optional[List[ServerEntry]]:
    """
    Returns None when the listing command itself failed, [] when it ran but no
    server lines could be parsed. Either way the server-list file is written.
    """
    print_status(config, "blue", "Fetching server list...")
    rc, out, err = run_cmd([config.tool, "--list"])
    servers = parse_server_list(out, limit=config.max_servers) if rc == 0 else []

    config.servers_file.write_text("".join(s.line + "\n" for s in servers), encoding="utf-8")

    if rc != 0:
        tail = err.splitlines()[-1] if err else f"exit code {rc}"
        print_status(config, "red", f"Error: Could not fetch server list ({tail})")
        return None
    if not servers:
        print_status(config, "red", "Error: No servers found in server list")
        return servers

    print_status(config, "green", f"Found {len(servers)} servers")
    return servers


# ----------------------------
# Server selection
# ----------------------------
def select_servers(
    servers: Sequence[ServerEntry],
    count: int = 0,
    rng: Optional[random.Random] = None,
) -> List[str]:
    """
    count == 0 keeps every server in listing order; otherwise `count` distinct
    servers are drawn at random (all of them if fewer are available).
    """
    ids = [str(s.server_id) for s in servers]
    if count <= 0:
        return ids
    rng = rng or random.Random()
    return rng.sample(ids, min(count, len(ids)))


def write_selection(config: RunConfig, selection: Sequence[str]) -> None:
    config.selected_file.write_text("".join(f"{sid}\n" for sid in selection), encoding="utf-8")


def read_selection(path: Path) -> List[str]:
    lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    return [line.strip() for line in lines if line.strip()]


def copy_server_file(server_file: Path, config: RunConfig) -> List[str]:
    """Copies a user-supplied ID list verbatim; IDs are not validated."""
    shutil.copyfile(server_file, config.selected_file)
    return read_selection(config.selected_file)


# ----------------------------
# Test runner
# ----------------------------
def find_server(server_id: str, servers: Sequence[ServerEntry]) -> Optional[ServerEntry]:
    for s in servers:
        if str(s.server_id) == server_id:
            return s
    return None


def server_label(server_id: str, servers: Sequence[ServerEntry]) -> str:
    entry = find_server(server_id, servers)
    return entry.line if entry else f"Server {server_id}"


def run_speedtest(server_id: str, config: RunConfig, servers: Sequence[ServerEntry] = ()) -> bool:
    print_status(config, "yellow", f"Testing server: {server_label(server_id, servers)}")

    cmd = [config.tool, "--server", server_id, "--simple"]
    rc = 1
    # IDs from a custom file are unchecked; keep their output inside results_dir.
    if Path(server_id).name == server_id and server_id not in (".", ".."):
        try:
            with config.result_file(server_id).open("w", encoding="utf-8") as f:
                try:
                    p = subprocess.run(cmd, check=False, stdout=f, stderr=subprocess.STDOUT, timeout=config.timeout_s)
                    rc = p.returncode
                except FileNotFoundError:
                    f.write(f"Command not found: {config.tool}\n")
                    rc = 127
                except subprocess.TimeoutExpired:
                    f.write(f"Timeout after {config.timeout_s}s: {' '.join(cmd)}\n")
                    rc = 124
        except OSError as e:
            print_status(config, "red", f"Could not write output for server {server_id}: {e}")

    if rc == 0:
        print_status(config, "green", f"✓ Server {server_id} test completed")
        return True
    print_status(config, "red", f"✗ Server {server_id} test failed")
    return False


def run_all(selection: Sequence[str], config: RunConfig, servers: Sequence[ServerEntry] = ()) -> Dict[str, bool]:
    """Runs every selected server in order; one failure never stops the rest."""
    print_status(config, "blue", "\nStarting speedtests...")
    outcomes: Dict[str, bool] = {}
    for i, server_id in enumerate(selection):
        if i > 0:
            time.sleep(max(0.0, config.sleep_between))
        outcomes[server_id] = run_speedtest(server_id, config, servers)
    return outcomes


# ----------------------------
# Result aggregation
# ----------------------------
def _value_after(label: str, text: str) -> Optional[str]:
    for line in text.splitlines():
        if label in line:
            parts = line.split()
            return parts[1] if len(parts) > 1 else ""
    return None


def parse_speedtest_output(text: str) -> Optional[SpeedResult]:
    """
    Parses `speedtest-cli --simple` output:

        Ping: 12.345 ms
        Download: 93.20 Mbit/s
        Upload: 11.45 Mbit/s

    The value is the second whitespace-separated token of the first line that
    mentions the label. Returns None unless both values are there.
    """
    download = _value_after("Download", text)
    upload = _value_after("Upload", text)
    if not download or not upload:
        return None
    return SpeedResult(
        download_mbps=safe_float(download),
        upload_mbps=safe_float(upload),
        download_raw=download,
        upload_raw=upload,
    )


def mean(values: List[Optional[float]]) -> Optional[float]:
    if not values or any(v is None for v in values):
        return None
    return sum(values) / len(values)


def analyze_results(config: RunConfig, servers: Sequence[ServerEntry] = ()) -> RunSummary:
    summary = RunSummary(timestamp=config.timestamp)
    for path in sorted(config.results_dir.glob(config.result_glob)):
        if not path.is_file():
            continue
        result = parse_speedtest_output(path.read_text(encoding="utf-8", errors="replace"))
        if result is None:
            summary.failed += 1
            continue
        server_id = config.server_id_from_result(path)
        entry = find_server(server_id, servers)
        label = entry.line if entry else server_id
        summary.reports.append(ServerReport(server_id=server_id, label=label, result=result))

    summary.avg_download_mbps = mean([r.result.download_mbps for r in summary.reports])
    summary.avg_upload_mbps = mean([r.result.upload_mbps for r in summary.reports])
    return summary


def _fmt_avg(v: Optional[float]) -> str:
    return f"{v:.2f}" if v is not None else "N/A"


def render_summary(summary: RunSummary, generated_at: Optional[str] = None) -> str:
    out = [
        f"Speedtest Summary - {generated_at or now_iso()}",
        "=======================================",
    ]
    for r in summary.reports:
        out.append(f"Server {r.label}: Download {r.result.download_raw} Mbit/s, Upload {r.result.upload_raw} Mbit/s")

    out.append("")
    if summary.successful:
        out += [
            "Summary Statistics:",
            f"Successful tests: {summary.successful}",
            f"Failed tests: {summary.failed}",
            f"Average Download: {_fmt_avg(summary.avg_download_mbps)} Mbit/s",
            f"Average Upload: {_fmt_avg(summary.avg_upload_mbps)} Mbit/s",
        ]
    else:
        out += [
            "No successful tests completed",
            f"Failed tests: {summary.failed}",
        ]
    return "\n".join(out) + "\n"


def write_summary(summary: RunSummary, config: RunConfig) -> Path:
    config.summary_file.write_text(render_summary(summary), encoding="utf-8")
    if config.jsonl_path is not None:
        record = dataclasses.asdict(summary)
        record.update(successful=summary.successful, hostname=config.hostname, results_dir=str(config.results_dir))
        write_jsonl(config.jsonl_path, record)
    return config.summary_file


def report_summary(summary: RunSummary, config: RunConfig) -> None:
    if summary.successful:
        print_status(config, "green", "\nResults Summary:")
        print_status(config, "green", f"Average Download: {_fmt_avg(summary.avg_download_mbps)} Mbit/s")
        print_status(config, "green", f"Average Upload: {_fmt_avg(summary.avg_upload_mbps)} Mbit/s")
        print_status(config, "green", f"Successful tests: {summary.successful}, Failed: {summary.failed}")
    else:
        print_status(config, "red", "No successful tests completed")
    print_status(config, "blue", f"Detailed results saved to: {config.summary_file}")


# ----------------------------
# CLI
# ----------------------------
class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        self.print_help(sys.stderr)
        self.exit(1, f"\n{self.prog}: error: {message}\n")


def non_negative_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}")
    if n < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0: {value}")
    return n


def build_arg_parser() -> argparse.ArgumentParser:
    p = _ArgumentParser(
        prog=APP_NAME,
        allow_abbrev=False,
        description="Run speedtest-cli against multiple servers and summarize the results.",
        epilog=(
            "examples:\n"
            f"  {APP_NAME}                    # test all available servers\n"
            f"  {APP_NAME} -n 10              # test 10 random servers\n"
            f"  {APP_NAME} -s my_servers.txt  # test servers from file"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    p.add_argument("-n", "--count", type=non_negative_int, default=0, help="Number of servers to test (default: all servers).")
    p.add_argument("-s", "--server-file", type=Path, default=None, help="Use specific server IDs from file (one ID per line).")

    p.add_argument("--results-dir", type=Path, default=DEFAULT_RESULTS_ROOT, help="Root directory for results (a per-host subdirectory is created).")
    p.add_argument("--sleep-between", type=float, default=DEFAULT_SLEEP_BETWEEN, help="Seconds to sleep between servers.")
    p.add_argument("--timeout", type=float, default=None, help="Give up on a single server after this many seconds (default: wait forever).")
    p.add_argument("--tool", type=str, default=DEFAULT_TOOL, help="speedtest-cli executable to run.")

    # output
    p.add_argument("--log", type=Path, default=DEFAULT_LOG_PATH, help="Path to append human logs.")
    p.add_argument("--jsonl", type=Path, default=None, help="Also append the run summary as JSONL to this path.")
    p.add_argument("--no-color", dest="color", action="store_false", help="Disable colored output.")
    p.add_argument("--quiet", action="store_true", help="Suppress status output; still writes result files.")
    return p


def config_from_args(args: argparse.Namespace) -> RunConfig:
    return RunConfig(
        timestamp=make_timestamp(),
        hostname=platform.node() or "localhost",
        results_root=args.results_dir,
        tool=args.tool,
        sleep_between=args.sleep_between,
        timeout_s=args.timeout,
        color=args.color,
        quiet=args.quiet,
        log_path=args.log,
        jsonl_path=args.jsonl,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    config = config_from_args(args)

    if not check_tool(config):
        return 1

    print_status(config, "blue", "Starting multi-server speedtest...")

    if args.server_file is not None and not args.server_file.is_file():
        print_status(config, "red", f"Error: Server file '{args.server_file}' not found")
        return 1

    create_results_dir(config)

    servers: List[ServerEntry] = []
    if args.server_file is None:
        discovered = discover_servers(config)
        if not discovered:
            return 1
        servers = discovered
        selection = select_servers(servers, args.count)
        write_selection(config, selection)
        if args.count == 0:
            print_status(config, "blue", f"Selected all {len(selection)} servers for testing")
        else:
            print_status(config, "blue", f"Selected {len(selection)} random servers for testing")
    else:
        try:
            selection = copy_server_file(args.server_file, config)
        except OSError as e:
            print_status(config, "red", f"Error: Could not read server file '{args.server_file}': {e}")
            return 1
        print_status(config, "blue", f"Using {len(selection)} servers from {args.server_file}")

    run_all(selection, config, servers)

    print_status(config, "blue", "\nAnalyzing results...")
    summary = analyze_results(config, servers)
    write_summary(summary, config)
    report_summary(summary, config)

    print_status(config, "green", "\nMulti-server speedtest completed!")
    print_status(config, "blue", f"All results saved to: {config.results_dir}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
