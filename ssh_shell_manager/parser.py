"""Parsers for the Linux telemetry commands run by the hardware service.

All functions are pure. They take text already passed through
``clean_command_output`` unless noted otherwise.
"""
import re
from typing import Dict, Iterable, List, Optional, Tuple

from .command_executor import detect_prompt, strip_ansi
from .datastructures import DEFAULT_PROMPT_PATTERNS


_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")
_LINK_LINE = re.compile(r"^\d+:\s+([^:@\s]+)(?:@\S+)?:\s+<([^>]*)>")

VIRTUAL_DEVICES = ("tmpfs", "devtmpfs", "overlay", "squashfs", "sysfs", "proc")
VIRTUAL_MOUNTS = ("/proc", "/sys", "/dev", "/run/user", "/snap", "/var/lib/docker")

_SIZE_UNITS = {
    "K": 1.0 / 1024,
    "M": 1.0,
    "G": 1024.0,
    "T": 1024.0 * 1024,
    "P": 1024.0 * 1024 * 1024,
}


def clean_command_output(output: str, command: Optional[str] = None,
                         prompts: Iterable[str] = DEFAULT_PROMPT_PATTERNS) -> str:
    """Return the payload of raw shell output.

    Escape sequences and carriage returns are removed, the echoed command line
    (the first non-empty line, when it ends with ``command``) is dropped, and
    so is a trailing prompt line.
    """
    text = strip_ansi(output).replace("\r\n", "\n").replace("\r", "\n")
    lines = text.split("\n")

    if command and command.strip():
        for index, line in enumerate(lines):
            if not line.strip():
                continue
            if line.rstrip().endswith(command.strip()):
                lines = lines[index + 1:]
            break

    while lines and not lines[-1].strip():
        lines.pop()
    if lines and detect_prompt(lines[-1], prompts, smart_detection=True):
        lines.pop()

    return "\n".join(line.rstrip() for line in lines).strip("\n")


def first_number(text: str) -> Optional[float]:
    match = _NUMBER.search(text)
    return float(match.group()) if match else None


def extract_cpu_model(text: str) -> str:
    for line in text.splitlines():
        if "Model name:" in line and "BIOS" not in line:
            return line.split("Model name:", 1)[1].strip()
    for line in text.splitlines():
        if "Vendor ID:" in line:
            return line.split("Vendor ID:", 1)[1].strip()
    return "Unknown CPU"


def extract_cpu_cores(text: str) -> int:
    """First line that is a bare integer (``nproc``); 1 if there is none."""
    for line in text.splitlines():
        if line.strip().isdigit():
            return int(line.strip())
    return 1


def extract_cpu_usage(text: str) -> float:
    """Busy percentage from the ``Cpu(s)`` line of ``top -bn1``."""
    for line in text.splitlines():
        if "Cpu(s)" not in line:
            continue
        for part in line.split(":", 1)[-1].split(","):
            if part.strip().endswith("id"):
                idle = first_number(part)
                if idle is not None:
                    return round(100.0 - idle, 1)
    return 0.0


def extract_cpu_frequency(text: str) -> Optional[float]:
    for line in text.splitlines():
        if "CPU MHz" in line:
            return first_number(line.split(":", 1)[-1])
    return None


def extract_cpu_temperature(text: str) -> Optional[float]:
    """Degrees Celsius from a thermal zone reading in millidegrees."""
    for line in text.splitlines():
        value = line.strip()
        if len(value) > 3 and _NUMBER.fullmatch(value):
            return float(value) / 1000.0
    return None


def parse_meminfo(text: str) -> Dict[str, int]:
    """Map each ``/proc/meminfo`` key to its value in kB."""
    values = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[0].endswith(":") and parts[1].isdigit():
            values[parts[0][:-1]] = int(parts[1])
    return values


def parse_size_to_mb(size: str) -> int:
    """Convert a ``df -h`` size such as ``20G`` or ``512M`` to whole MB."""
    size = size.strip().upper()
    match = re.match(r"(\d+(?:\.\d+)?)([KMGTP]?)", size)
    if not match:
        return 0
    number, unit = float(match.group(1)), match.group(2)
    if not unit:
        return int(number / 1024 / 1024)
    return int(number * _SIZE_UNITS[unit])


def is_virtual_filesystem(device: str, mount_point: str) -> bool:
    if device.startswith(VIRTUAL_DEVICES):
        return True
    if not mount_point.startswith(VIRTUAL_MOUNTS):
        return False
    # Real block devices mounted under /dev and real mounts under /run stay
    if mount_point.startswith("/dev") and device.startswith("/dev/"):
        return False
    if mount_point.startswith("/run"):
        return False
    return True


def parse_df_output(text: str) -> List[Dict]:
    """Real filesystems from ``df -h`` with sizes in MB."""
    filesystems = []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 6 or parts[0] == "Filesystem":
            continue
        device, mount_point = parts[0], " ".join(parts[5:])
        if is_virtual_filesystem(device, mount_point):
            continue
        filesystems.append({
            "device": device,
            "mount_point": mount_point,
            "total": parse_size_to_mb(parts[1]),
            "used": parse_size_to_mb(parts[2]),
            "free": parse_size_to_mb(parts[3]),
        })
    return filesystems


def parse_lsblk_rotational(text: str) -> Dict[str, bool]:
    """Map disk name to rotational flag from ``lsblk -d -n -o NAME,ROTA``."""
    disks = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) == 2 and parts[1] in ("0", "1"):
            disks[parts[0]] = parts[1] == "1"
    return disks


def disk_type(device: str, rotational: Dict[str, bool]) -> str:
    """``ssd``, ``hdd`` or ``unknown`` for a partition such as /dev/sda1."""
    if not device.startswith("/dev/"):
        return "unknown"
    name = device[len("/dev/"):]
    matches = [disk for disk in rotational if name.startswith(disk)]
    if not matches:
        return "unknown"
    return "hdd" if rotational[max(matches, key=len)] else "ssd"


def parse_netdev_output(text: str) -> List[Tuple[str, int, int]]:
    """``(name, rx_bytes, tx_bytes)`` per interface in ``/proc/net/dev``; lo is skipped."""
    interfaces = []
    for line in text.splitlines():
        if ":" not in line:
            continue
        name, stats = line.split(":", 1)
        name = name.strip()
        fields = stats.split()
        if name == "lo" or len(fields) < 16:
            continue
        if not (fields[0].isdigit() and fields[8].isdigit()):
            continue
        interfaces.append((name, int(fields[0]), int(fields[8])))
    return interfaces


def parse_link_states(text: str) -> Dict[str, str]:
    """Map interface name to ``up``/``down`` from ``ip -o link show``."""
    states = {}
    for line in text.splitlines():
        match = _LINK_LINE.match(line.strip())
        if match:
            flags = match.group(2).split(",")
            states[match.group(1)] = "up" if "UP" in flags else "down"
    return states


def calculate_network_totals(interfaces: Iterable[Tuple[str, int, int]]) -> Tuple[int, int]:
    total_rx = total_tx = 0
    for _, rx, tx in interfaces:
        total_rx += rx
        total_tx += tx
    return total_rx, total_tx
