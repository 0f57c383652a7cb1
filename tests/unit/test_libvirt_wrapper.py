"""Unit tests for the libvirt wrapper with a stand-in binding module."""

import pytest
from types import SimpleNamespace
from unittest.mock import MagicMock, Mock, patch

from kvm_spinup.exceptions import DependencyError, HypervisorAccessError, LibvirtError
from kvm_spinup.libvirt_wrapper import LibvirtWrapper
from kvm_spinup.models import InstallationState

DOMAIN_XML = """<domain>
  <devices>
    <disk type='file' device='disk'><target dev='vda' bus='virtio'/></disk>
    <disk type='file' device='cdrom'><target dev='sda' bus='sata'/></disk>
  </devices>
</domain>"""


class FakeLibvirtError(Exception):
    def __init__(self, message, code=0):
        super().__init__(message)
        self.code = code

    def get_error_code(self):
        return self.code


def fake_binding(conn):
    return SimpleNamespace(
        libvirtError=FakeLibvirtError,
        VIR_ERR_NO_DOMAIN=42,
        VIR_DOMAIN_RUNNING=1,
        VIR_DOMAIN_BLOCKED=2,
        VIR_DOMAIN_PAUSED=3,
        VIR_DOMAIN_SHUTOFF=5,
        VIR_DOMAIN_CRASHED=6,
        open=Mock(return_value=conn),
    )


@pytest.fixture
def conn():
    conn = MagicMock()
    conn.isAlive.return_value = True
    return conn


@pytest.fixture
def binding(conn):
    module = fake_binding(conn)
    with patch("kvm_spinup.libvirt_wrapper.libvirt", module):
        yield module


def domain_in(conn, state=1):
    domain = Mock()
    domain.state.return_value = (state, 0)
    domain.XMLDesc.return_value = DOMAIN_XML
    domain.blockStats.return_value = (10, 4096, 5, 1024, 0)
    conn.lookupByName.return_value = domain
    return domain


class TestConnection:
    """Test connection handling."""

    @pytest.mark.asyncio
    async def test_missing_binding(self):
        with patch("kvm_spinup.libvirt_wrapper.libvirt", None):
            with pytest.raises(DependencyError, match="libvirt-python"):
                await LibvirtWrapper().connect()

    @pytest.mark.asyncio
    async def test_connection_cached(self, binding, conn):
        wrapper = LibvirtWrapper("qemu:///system")
        await wrapper.connect()
        await wrapper.connect()
        binding.open.assert_called_once_with("qemu:///system")

    @pytest.mark.asyncio
    async def test_open_failure(self, binding):
        binding.open.side_effect = FakeLibvirtError("permission denied")
        with pytest.raises(HypervisorAccessError) as exc_info:
            await LibvirtWrapper().connect()
        assert exc_info.value.uri == "qemu:///system"


class TestDomainQueries:
    """Test state and activity queries."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "raw,expected",
        [
            (1, InstallationState.RUNNING),
            (2, InstallationState.RUNNING),
            (3, InstallationState.PAUSED),
            (5, InstallationState.SHUT_OFF),
            (6, InstallationState.CRASHED),
            (4, InstallationState.OTHER),
        ],
    )
    async def test_state_mapping(self, binding, conn, raw, expected):
        domain_in(conn, raw)
        assert await LibvirtWrapper().get_domain_state("web-01") is expected

    @pytest.mark.asyncio
    async def test_missing_domain(self, binding, conn):
        conn.lookupByName.side_effect = FakeLibvirtError("no domain", 42)
        wrapper = LibvirtWrapper()
        assert await wrapper.get_domain_state("ghost") is InstallationState.NOT_FOUND
        assert await wrapper.vm_exists("ghost") is False

    @pytest.mark.asyncio
    async def test_domain_vanishes_during_query(self, binding, conn):
        domain = domain_in(conn)
        domain.state.side_effect = FakeLibvirtError("gone", 42)
        assert await LibvirtWrapper().get_domain_state("web-01") is InstallationState.NOT_FOUND

    @pytest.mark.asyncio
    async def test_block_activity_sums_disks_only(self, binding, conn):
        domain = domain_in(conn)
        assert await LibvirtWrapper().get_block_activity("web-01") == 4096 + 1024
        domain.blockStats.assert_called_once_with("vda")

    @pytest.mark.asyncio
    async def test_block_activity_unavailable(self, binding, conn):
        domain = domain_in(conn)
        domain.blockStats.side_effect = FakeLibvirtError("not running")
        assert await LibvirtWrapper().get_block_activity("web-01") is None

    @pytest.mark.asyncio
    async def test_resume(self, binding, conn):
        domain = domain_in(conn, 3)
        await LibvirtWrapper().resume("web-01")
        domain.resume.assert_called_once()


class TestNetwork:
    """Test libvirt network helpers."""

    @pytest.mark.asyncio
    async def test_missing_network_defined_and_started(self, binding, conn):
        network = Mock()
        network.isActive.return_value = False
        conn.networkLookupByName.side_effect = FakeLibvirtError("no network")
        conn.networkDefineXML.return_value = network

        assert await LibvirtWrapper().ensure_network("default") is True

        xml = conn.networkDefineXML.call_args.args[0]
        assert "<name>default</name>" in xml
        assert "<forward mode='nat'/>" in xml
        network.create.assert_called_once()

    @pytest.mark.asyncio
    async def test_missing_custom_network_not_created(self, binding, conn):
        conn.networkLookupByName.side_effect = FakeLibvirtError("no network")

        with pytest.raises(LibvirtError, match="'lab' is not defined"):
            await LibvirtWrapper().ensure_network("lab")

        conn.networkDefineXML.assert_not_called()

    @pytest.mark.asyncio
    async def test_active_network_untouched(self, binding, conn):
        conn.networkLookupByName.return_value.isActive.return_value = True
        assert await LibvirtWrapper().ensure_network("default") is False
        conn.networkDefineXML.assert_not_called()

    @pytest.mark.asyncio
    async def test_gateway(self, binding, conn):
        conn.networkLookupByName.return_value.XMLDesc.return_value = (
            "<network><ip address='192.168.122.1' netmask='255.255.255.0'/></network>"
        )
        assert await LibvirtWrapper().network_gateway("default") == "192.168.122.1"
