import pytest

from ssh_shell_manager.datastructures import ConnectionConfig, ConnectionStatus
from ssh_shell_manager.errors import ConnectionNotFoundError, NotConnectedError, SSHShellError
from ssh_shell_manager.hardware import HardwareService
from ssh_shell_manager.session_manager import SessionManager

from conftest import MockChannel, MockTransport, MockTransportFactory, echo_responder


MEMINFO = """MemTotal:        8192000 kB
MemFree:          512000 kB
MemAvailable:    2048000 kB
SwapTotal:       2097152 kB
SwapFree:        1048576 kB"""

NETDEV_HEADER = """Inter-|   Receive                                                |  Transmit
 face |bytes    packets errs drop fifo frame compressed multicast|bytes    packets errs drop fifo colls carrier compressed
"""


def netdev(rx, tx):
    return NETDEV_HEADER + f"  eth0: {rx} 10 0 0 0 0 0 0 {tx} 10 0 0 0 0 0 0\n"


class StubManager:
    """Answers commands from a dict, shaped like raw shell output."""

    def __init__(self, outputs=None):
        self.outputs = dict(outputs or {})
        self.listeners = []
        self.status = ConnectionStatus.connected()
        self.commands = []

    def add_disconnect_listener(self, callback):
        self.listeners.append(callback)

    def get_status(self, connection_id):
        return self.status

    def execute_command(self, connection_id, command, options=None):
        self.commands.append(command)
        value = self.outputs.get(command, "")
        if isinstance(value, Exception):
            raise value
        body = value.replace("\n", "\r\n") + "\r\n" if value else ""
        return f"{command}\r\n{body}u@test:~$ "


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_memory_info_uses_available_and_reports_swap():
    manager = StubManager({HardwareService.MEMINFO_CMD: MEMINFO})
    memory = HardwareService(manager).get_memory_info("c1")
    assert memory.total == 8000
    assert memory.free == 2000
    assert memory.used == 6000
    assert memory.usage == 75.0
    assert memory.swap.total == 2048
    assert memory.swap.used == 1024
    assert memory.swap.usage == 50.0


def test_memory_info_without_swap():
    manager = StubManager({HardwareService.MEMINFO_CMD: "MemTotal: 1024000 kB\nMemFree: 512000 kB\nSwapTotal: 0 kB"})
    memory = HardwareService(manager).get_memory_info("c1")
    assert memory.free == 500
    assert memory.swap is None


def test_storage_info_tolerates_missing_lsblk():
    df = "Filesystem Size Used Avail Use% Mounted on\n/dev/sda1 100G 25G 75G 25% /"
    manager = StubManager({
        HardwareService.DF_CMD: df,
        HardwareService.LSBLK_CMD: ConnectionNotFoundError("gone"),
    })
    storage = HardwareService(manager).get_storage_info("c1")
    assert len(storage) == 1
    assert storage[0].usage == 25.0
    assert storage[0].type == "unknown"

    manager.outputs[HardwareService.LSBLK_CMD] = "sda 0"
    storage = HardwareService(manager).get_storage_info("c1")
    assert storage[0].type == "ssd"


def test_network_speed_from_previous_sample():
    clock = FakeClock()
    manager = StubManager({
        HardwareService.NETDEV_CMD: netdev(1000, 500),
        HardwareService.LINK_CMD: "2: eth0: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500",
    })
    service = HardwareService(manager, clock=clock)

    first = service.get_network_info("c1")
    assert first.rx_speed == 0.0 and first.tx_speed == 0.0
    assert first.interfaces[0].status == "up"
    assert (first.total_rx, first.total_tx) == (1000, 500)

    clock.now += 2.0
    manager.outputs[HardwareService.NETDEV_CMD] = netdev(5000, 1500)
    second = service.get_network_info("c1")
    assert second.rx_speed == 2000.0
    assert second.tx_speed == 500.0


def test_network_counter_reset_gives_zero_speed():
    clock = FakeClock()
    manager = StubManager({HardwareService.NETDEV_CMD: netdev(5000, 5000)})
    service = HardwareService(manager, clock=clock)
    service.get_network_info("c1")

    clock.now += 1.0
    manager.outputs[HardwareService.NETDEV_CMD] = netdev(100, 100)
    info = service.get_network_info("c1")
    assert info.rx_speed == 0.0 and info.tx_speed == 0.0

    clock.now += 1.0
    manager.outputs[HardwareService.NETDEV_CMD] = netdev(300, 200)
    info = service.get_network_info("c1")
    assert info.rx_speed == 200.0
    assert info.tx_speed == 100.0


def test_forget_drops_sample_on_disconnect():
    clock = FakeClock()
    manager = StubManager({HardwareService.NETDEV_CMD: netdev(1000, 1000)})
    service = HardwareService(manager, clock=clock)
    service.get_network_info("c1")

    assert manager.listeners == [service.forget]
    manager.listeners[0]("c1")

    clock.now += 1.0
    manager.outputs[HardwareService.NETDEV_CMD] = netdev(2000, 2000)
    assert service.get_network_info("c1").rx_speed == 0.0


def test_hardware_info_requires_connected_session():
    manager = StubManager()
    manager.status = ConnectionStatus.error("lost")
    with pytest.raises(NotConnectedError):
        HardwareService(manager).get_hardware_info("c1")
    assert manager.commands == []


def test_required_command_failure_propagates():
    manager = StubManager({HardwareService.MEMINFO_CMD: NotConnectedError("lost")})
    with pytest.raises(SSHShellError):
        HardwareService(manager).get_memory_info("c1")


def test_hardware_info_over_a_session(settings):
    outputs = {
        HardwareService.CPU_MODEL_CMD: "Model name:          AMD EPYC 7543 32-Core Processor",
        HardwareService.CPU_CORES_CMD: "4",
        HardwareService.CPU_USAGE_CMD: "%Cpu(s):  5.0 us,  1.0 sy,  0.0 ni, 94.0 id,  0.0 wa",
        HardwareService.CPU_FREQ_CMD: "CPU MHz:             2794.750",
        HardwareService.CPU_TEMP_CMD: "52000",
        HardwareService.MEMINFO_CMD: MEMINFO,
        HardwareService.DF_CMD: "Filesystem Size Used Avail Use% Mounted on\n/dev/vda1 50G 10G 40G 20% /",
        HardwareService.LSBLK_CMD: "vda 1",
        HardwareService.NETDEV_CMD: netdev(4096, 2048),
        HardwareService.LINK_CMD: "2: eth0: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500",
    }
    factory = MockTransportFactory(
        transport_factory=lambda: MockTransport(channel_factory=lambda: MockChannel(echo_responder(outputs)))
    )
    manager = SessionManager(transport_factory=factory, settings=settings)
    service = HardwareService(manager)
    cid = manager.connect(ConnectionConfig(host="test", username="u", password="p"))

    info = service.get_hardware_info(cid)
    assert info.cpu.model == "AMD EPYC 7543 32-Core Processor"
    assert info.cpu.cores == 4
    assert info.cpu.usage == 6.0
    assert info.cpu.frequency == 2794.75
    assert info.cpu.temperature == 52.0
    assert info.memory.total == 8000
    assert info.storage[0].device == "/dev/vda1"
    assert info.storage[0].type == "hdd"
    assert info.network.total_rx == 4096
    assert info.network.interfaces[0].status == "up"

    data = info.to_dict()
    assert data["cpu"]["cores"] == 4
    assert isinstance(data["timestamp"], str)
    manager.shutdown()
