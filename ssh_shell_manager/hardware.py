"""Hardware telemetry gathered by running Linux commands over a session."""
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from . import parser
from .errors import NotConnectedError, SSHShellError


@dataclass
class CpuInfo:
    model: str = "Unknown CPU"
    cores: int = 1
    usage: float = 0.0
    frequency: Optional[float] = None
    temperature: Optional[float] = None


@dataclass
class SwapInfo:
    total: int = 0
    used: int = 0
    free: int = 0
    usage: float = 0.0


@dataclass
class MemoryInfo:
    """Sizes in MB."""
    total: int = 0
    used: int = 0
    free: int = 0
    usage: float = 0.0
    swap: Optional[SwapInfo] = None


@dataclass
class StorageInfo:
    device: str
    mount_point: str
    total: int = 0
    used: int = 0
    free: int = 0
    usage: float = 0.0
    type: str = "unknown"


@dataclass
class NetworkInterface:
    name: str
    rx: int = 0
    tx: int = 0
    status: str = "unknown"


@dataclass
class NetworkInfo:
    """Byte counters and speeds in bytes per second."""
    interfaces: List[NetworkInterface] = field(default_factory=list)
    total_rx: int = 0
    total_tx: int = 0
    rx_speed: float = 0.0
    tx_speed: float = 0.0


@dataclass
class HardwareInfo:
    cpu: CpuInfo
    memory: MemoryInfo
    storage: List[StorageInfo]
    network: NetworkInfo
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class NetworkSample:
    rx: int
    tx: int
    at: float


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100.0, 1) if whole > 0 else 0.0


class HardwareService:
    """Collects CPU, memory, storage and network data from a connected host.

    Network speed is derived from the previous sample taken on the same
    connection; samples are dropped when the connection is disconnected.
    """

    CPU_MODEL_CMD = "lscpu | grep 'Model name' || lscpu | grep 'Vendor ID' || echo 'Unknown CPU'"
    CPU_CORES_CMD = "nproc"
    CPU_USAGE_CMD = "top -bn1 | grep 'Cpu(s)'"
    CPU_FREQ_CMD = "lscpu | grep 'CPU MHz'"
    CPU_TEMP_CMD = "cat /sys/class/thermal/thermal_zone*/temp 2>/dev/null | head -1"
    MEMINFO_CMD = "cat /proc/meminfo"
    DF_CMD = "df -h"
    LSBLK_CMD = "lsblk -d -n -o NAME,ROTA"
    NETDEV_CMD = "cat /proc/net/dev"
    LINK_CMD = "ip -o link show"

    def __init__(self, manager, clock: Callable[[], float] = time.monotonic):
        self.manager = manager
        self._clock = clock
        self._samples: Dict[str, NetworkSample] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger('ssh_shell_manager.hardware')
        manager.add_disconnect_listener(self.forget)

    def _run(self, connection_id: str, command: str) -> str:
        output = self.manager.execute_command(connection_id, command)
        return parser.clean_command_output(output, command)

    def _run_optional(self, connection_id: str, command: str) -> Optional[str]:
        try:
            return self._run(connection_id, command)
        except SSHShellError as exc:
            self.logger.warning(f"[TELEMETRY_SKIPPED] {command!r} on {connection_id}: {exc}")
            return None

    def get_cpu_info(self, connection_id: str) -> CpuInfo:
        return CpuInfo(
            model=parser.extract_cpu_model(self._run(connection_id, self.CPU_MODEL_CMD)),
            cores=parser.extract_cpu_cores(self._run(connection_id, self.CPU_CORES_CMD)),
            usage=parser.extract_cpu_usage(self._run(connection_id, self.CPU_USAGE_CMD)),
            frequency=parser.extract_cpu_frequency(self._run(connection_id, self.CPU_FREQ_CMD)),
            temperature=parser.extract_cpu_temperature(self._run(connection_id, self.CPU_TEMP_CMD)),
        )

    def get_memory_info(self, connection_id: str) -> MemoryInfo:
        values = parser.parse_meminfo(self._run(connection_id, self.MEMINFO_CMD))

        total = values.get("MemTotal", 0) // 1024
        available = values.get("MemAvailable") or values.get("MemFree", 0)
        free = min(available // 1024, total)
        memory = MemoryInfo(total=total, free=free, used=total - free, usage=_percent(total - free, total))

        swap_total = values.get("SwapTotal", 0) // 1024
        if swap_total > 0:
            swap_free = min(values.get("SwapFree", 0) // 1024, swap_total)
            memory.swap = SwapInfo(
                total=swap_total,
                free=swap_free,
                used=swap_total - swap_free,
                usage=_percent(swap_total - swap_free, swap_total),
            )
        return memory

    def get_storage_info(self, connection_id: str) -> List[StorageInfo]:
        storage = [
            StorageInfo(usage=_percent(fs["used"], fs["total"]), **fs)
            for fs in parser.parse_df_output(self._run(connection_id, self.DF_CMD))
        ]
        lsblk = self._run_optional(connection_id, self.LSBLK_CMD)
        if lsblk is not None:
            rotational = parser.parse_lsblk_rotational(lsblk)
            for item in storage:
                item.type = parser.disk_type(item.device, rotational)
        return storage

    def get_network_info(self, connection_id: str) -> NetworkInfo:
        counters = parser.parse_netdev_output(self._run(connection_id, self.NETDEV_CMD))
        links = self._run_optional(connection_id, self.LINK_CMD)
        states = parser.parse_link_states(links) if links is not None else {}

        info = NetworkInfo(interfaces=[
            NetworkInterface(name=name, rx=rx, tx=tx, status=states.get(name, "unknown"))
            for name, rx, tx in counters
        ])
        info.total_rx, info.total_tx = parser.calculate_network_totals(counters)

        now = self._clock()
        with self._lock:
            previous = self._samples.get(connection_id)
            self._samples[connection_id] = NetworkSample(rx=info.total_rx, tx=info.total_tx, at=now)

        if previous is None:
            return info
        elapsed = now - previous.at
        if elapsed <= 0 or info.total_rx < previous.rx or info.total_tx < previous.tx:
            self.logger.debug(f"Network counters reset on {connection_id}; speed unavailable")
            return info
        info.rx_speed = (info.total_rx - previous.rx) / elapsed
        info.tx_speed = (info.total_tx - previous.tx) / elapsed
        return info

    def get_hardware_info(self, connection_id: str) -> HardwareInfo:
        status = self.manager.get_status(connection_id)
        if not status.is_connected:
            raise NotConnectedError(f"Connection {connection_id} is not connected ({status})")
        self.logger.info(f"[HARDWARE] Collecting telemetry from {connection_id}")
        return HardwareInfo(
            cpu=self.get_cpu_info(connection_id),
            memory=self.get_memory_info(connection_id),
            storage=self.get_storage_info(connection_id),
            network=self.get_network_info(connection_id),
        )

    def forget(self, connection_id: str):
        with self._lock:
            self._samples.pop(connection_id, None)
