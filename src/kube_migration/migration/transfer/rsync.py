"""Rsync and stunnel configuration for volume transfer pods.

The destination runs an rsync daemon bound to localhost behind an stunnel
server; the source runs rsync against a local stunnel client. Both tunnel
ends authenticate with a pre-shared key mounted from a Secret.
"""

import re
import shlex
from typing import Any

RSYNC_DAEMON_PORT = 8873
RSYNC_MODULE = "data"

DATA_MOUNT = "/data"
CONFIG_MOUNT = "/etc/kube-bridge"
PSK_MOUNT = "/etc/kube-bridge-psk"
SYNC_MOUNT = "/sync"
DONE_MARKER = f"{SYNC_MOUNT}/done"

PSK_FILE = "psk.txt"
RSYNCD_CONF = "rsyncd.conf"
STUNNEL_CONF = "stunnel.conf"

# Per-file sha256 in a stable order, hashed once more
CHECKSUM_SCRIPT = (
    "find . -type f -print0 | sort -z | xargs -0 -r sha256sum | sha256sum | cut -d' ' -f1"
)


def subpath(root: str, path: str | None) -> str:
    """Join a sub-directory of the claim onto a mount point."""
    cleaned = (path or "").strip("/")
    return f"{root}/{cleaned}" if cleaned else root


def rsyncd_config(dest_path: str | None = None) -> str:
    return "\n".join(
        [
            "pid file = /tmp/rsyncd.pid",
            f"port = {RSYNC_DAEMON_PORT}",
            "address = 127.0.0.1",
            f"[{RSYNC_MODULE}]",
            f"    path = {subpath(DATA_MOUNT, dest_path)}",
            "    read only = false",
            "    use chroot = false",
            "    munge symlinks = false",
            "    uid = 0",
            "    gid = 0",
            "",
        ]
    )


def stunnel_server_config(tunnel_port: int) -> str:
    return "\n".join(
        [
            "foreground = yes",
            "pid =",
            "debug = notice",
            "socket = l:TCP_NODELAY=1",
            "[rsync]",
            f"accept = {tunnel_port}",
            f"connect = 127.0.0.1:{RSYNC_DAEMON_PORT}",
            "ciphers = PSK",
            f"PSKsecrets = {PSK_MOUNT}/{PSK_FILE}",
            "",
        ]
    )


def stunnel_client_config(host: str, port: int, sni: bool = False) -> str:
    lines = [
        "foreground = no",
        "pid = /tmp/stunnel.pid",
        "debug = notice",
        "socket = r:TCP_NODELAY=1",
        "[rsync]",
        "client = yes",
        f"accept = 127.0.0.1:{RSYNC_DAEMON_PORT}",
        f"connect = {host}:{port}",
        "ciphers = PSK",
        f"PSKsecrets = {PSK_MOUNT}/{PSK_FILE}",
    ]
    if sni:
        lines.append(f"sni = {host}")
    return "\n".join(lines + [""])


def psk_entry(identity: str, key: str) -> str:
    """stunnel PSK secrets line."""
    return f"{identity}:{key}\n"


def rsync_client_script(options: list[str], source_path: str | None = None, attempts: int = 5) -> str:
    """Shell script of the source rsync container.

    Retries while the tunnel comes up, then drops the marker that lets the
    stunnel sidecar exit, and exits with rsync's status.
    """
    source = subpath(DATA_MOUNT, source_path).rstrip("/") + "/"
    command = " ".join(
        ["rsync", *(shlex.quote(o) for o in options), "--stats", shlex.quote(source),
         f"rsync://127.0.0.1:{RSYNC_DAEMON_PORT}/{RSYNC_MODULE}/"]
    )
    return (
        "rc=1\n"
        f"for i in $(seq 1 {attempts}); do\n"
        f"  {command} && rc=0 && break\n"
        "  rc=$?\n"
        "  sleep 5\n"
        "done\n"
        f"touch {DONE_MARKER}\n"
        "exit $rc\n"
    )


def stunnel_client_script() -> str:
    return (
        f"stunnel {CONFIG_MOUNT}/{STUNNEL_CONF}\n"
        f"while [ ! -f {DONE_MARKER} ]; do sleep 1; done\n"
        "exit 0\n"
    )


def checksum_script(path: str | None = None) -> str:
    return f"cd {shlex.quote(subpath(DATA_MOUNT, path))} && {CHECKSUM_SCRIPT}"


def parse_rsync_stats(output: str) -> dict[str, Any]:
    """Parse rsync ``--stats`` output.

    Args:
        output: Rsync command output

    Returns:
        Dictionary with transfer statistics
    """
    stats: dict[str, Any] = {
        "files_transferred": 0,
        "total_size": 0,
        "bytes_transferred": 0,
        "bytes_sent": 0,
        "bytes_received": 0,
        "transfer_rate": "",
        "speedup": 1.0,
    }

    for line in output.split("\n"):
        if "Number of files transferred:" in line or "Number of regular files transferred:" in line:
            match = re.search(r"([\d,]+)", line.split(":", 1)[1])
            if match:
                stats["files_transferred"] = int(match.group(1).replace(",", ""))
        elif "Total file size:" in line:
            match = re.search(r"([\d,]+) bytes", line)
            if match:
                stats["total_size"] = int(match.group(1).replace(",", ""))
        elif "Total transferred file size:" in line:
            match = re.search(r"([\d,]+) bytes", line)
            if match:
                stats["bytes_transferred"] = int(match.group(1).replace(",", ""))
        elif line.startswith("Total bytes sent:"):
            match = re.search(r"([\d,]+)", line)
            if match:
                stats["bytes_sent"] = int(match.group(1).replace(",", ""))
        elif line.startswith("Total bytes received:"):
            match = re.search(r"([\d,]+)", line)
            if match:
                stats["bytes_received"] = int(match.group(1).replace(",", ""))
        elif "sent" in line and "received" in line and "/sec" in line:
            match = re.search(r"([\d,]+\.?\d*) (\w+/sec)", line)
            if match:
                stats["transfer_rate"] = f"{match.group(1)} {match.group(2)}"
        elif "speedup is" in line:
            match = re.search(r"speedup is ([\d,]+\.?\d*)", line)
            if match:
                stats["speedup"] = float(match.group(1).replace(",", ""))

    return stats
