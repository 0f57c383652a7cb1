"""
Libvirt API wrapper for KVM operations.

This module provides a high-level interface to libvirt for the queries the
provisioner and installation monitor need.
"""

from __future__ import annotations

import uuid
import xml.etree.ElementTree as ET
from typing import Any, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    import libvirt
else:
    try:
        import libvirt  # type: ignore[import-untyped,import-not-found]
    except ImportError:
        libvirt = None  # type: ignore[assignment]

from .exceptions import DependencyError, HypervisorAccessError, LibvirtError
from .logging import logger
from .models import InstallationState

DEFAULT_NETWORK = "default"

# The stock libvirt NAT network; its bridge and subnet belong to "default" only
DEFAULT_NETWORK_XML = """<network>
  <name>default</name>
  <uuid>{uuid}</uuid>
  <forward mode='nat'/>
  <bridge name='virbr0' stp='on' delay='0'/>
  <ip address='192.168.122.1' netmask='255.255.255.0'>
    <dhcp>
      <range start='192.168.122.2' end='192.168.122.254'/>
    </dhcp>
  </ip>
</network>"""


class LibvirtWrapper:
    """Wrapper for libvirt operations."""

    def __init__(self, uri: str = "qemu:///system") -> None:
        self.uri = uri
        self._conn: Any = None

    async def connect(self) -> Any:
        """Open (or reuse) the libvirt connection."""
        if libvirt is None:
            raise DependencyError(["libvirt-python"])

        if self._conn is not None:
            if self._conn.isAlive():
                return self._conn
            self._conn = None

        try:
            conn = libvirt.open(self.uri)
        except libvirt.libvirtError as e:
            logger.error(f"Libvirt connection failed: {e}", uri=self.uri)
            raise HypervisorAccessError(str(e), self.uri)
        if not conn:
            raise HypervisorAccessError("libvirt returned no connection", self.uri)

        self._conn = conn
        logger.debug(f"Connected to libvirt at {self.uri}", uri=self.uri)
        return conn

    async def list_domain_names(self) -> List[str]:
        conn = await self.connect()
        try:
            return [d.name() for d in conn.listAllDomains()]
        except libvirt.libvirtError as e:
            raise HypervisorAccessError(str(e), self.uri)

    async def _lookup(self, vm_name: str) -> Any:
        conn = await self.connect()
        try:
            return conn.lookupByName(vm_name)
        except libvirt.libvirtError:
            return None

    async def vm_exists(self, vm_name: str) -> bool:
        """Check if a domain with this name is defined."""
        return await self._lookup(vm_name) is not None

    async def get_domain_state(self, vm_name: str) -> InstallationState:
        """Map the libvirt domain state onto the monitor's states."""
        domain = await self._lookup(vm_name)
        if domain is None:
            return InstallationState.NOT_FOUND

        try:
            state, _reason = domain.state()
        except libvirt.libvirtError as e:
            # Domain vanished between lookup and query
            if e.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                return InstallationState.NOT_FOUND
            raise LibvirtError(str(e), "get_domain_state")

        state_map = {
            libvirt.VIR_DOMAIN_RUNNING: InstallationState.RUNNING,
            libvirt.VIR_DOMAIN_BLOCKED: InstallationState.RUNNING,
            libvirt.VIR_DOMAIN_PAUSED: InstallationState.PAUSED,
            libvirt.VIR_DOMAIN_SHUTOFF: InstallationState.SHUT_OFF,
            libvirt.VIR_DOMAIN_CRASHED: InstallationState.CRASHED,
        }
        return state_map.get(state, InstallationState.OTHER)

    async def get_block_activity(self, vm_name: str) -> Optional[int]:
        """
        Total bytes read and written across the domain's disks.

        Returns None when the counters cannot be read (domain gone or not running).
        """
        domain = await self._lookup(vm_name)
        if domain is None:
            return None

        try:
            root = ET.fromstring(domain.XMLDesc(0))
        except (libvirt.libvirtError, ET.ParseError) as e:
            logger.debug(f"Could not read domain XML for {vm_name}: {e}", vm_name=vm_name)
            return None

        total = 0
        found = False
        for target in root.findall(".//devices/disk[@device='disk']/target"):
            dev = target.get("dev")
            if not dev:
                continue
            try:
                _rd_req, rd_bytes, _wr_req, wr_bytes, _errs = domain.blockStats(dev)
            except libvirt.libvirtError as e:
                logger.debug(f"blockStats failed for {vm_name}/{dev}: {e}", vm_name=vm_name)
                continue
            total += rd_bytes + wr_bytes
            found = True

        return total if found else None

    async def resume(self, vm_name: str) -> None:
        domain = await self._lookup(vm_name)
        if domain is None:
            return
        try:
            domain.resume()
            logger.info(f"Resumed paused VM {vm_name}", vm_name=vm_name)
        except libvirt.libvirtError as e:
            logger.warning(f"Failed to resume VM {vm_name}: {e}", vm_name=vm_name)

    async def ensure_network(self, network_name: str) -> bool:
        """
        Make sure the libvirt network exists and is active.

        Returns:
            bool: True if the network had to be created or started
        """
        conn = await self.connect()
        changed = False
        try:
            try:
                network = conn.networkLookupByName(network_name)
            except libvirt.libvirtError:
                if network_name != DEFAULT_NETWORK:
                    raise LibvirtError(
                        f"Network '{network_name}' is not defined; only the '{DEFAULT_NETWORK}' "
                        "NAT network is created automatically",
                        "ensure_network",
                    )
                logger.warning(f"Creating libvirt network {network_name}")
                network = conn.networkDefineXML(DEFAULT_NETWORK_XML.format(uuid=uuid.uuid4()))
                network.setAutostart(1)
                changed = True

            if not network.isActive():
                logger.warning(f"Starting libvirt network {network_name}")
                network.create()
                changed = True
        except libvirt.libvirtError as e:
            raise LibvirtError(str(e), "ensure_network")

        return changed

    async def network_gateway(self, network_name: str) -> Optional[str]:
        """Host-side address of a libvirt network, as seen by its guests."""
        conn = await self.connect()
        try:
            network = conn.networkLookupByName(network_name)
            root = ET.fromstring(network.XMLDesc(0))
        except (libvirt.libvirtError, ET.ParseError):
            return None

        ip_elem = root.find("ip")
        if ip_elem is not None and ip_elem.get("address"):
            return ip_elem.get("address")
        return None

    async def network_bridge(self, network_name: str) -> Optional[str]:
        conn = await self.connect()
        try:
            return conn.networkLookupByName(network_name).bridgeName()
        except libvirt.libvirtError:
            return None

    def close(self) -> None:
        """Close the libvirt connection."""
        if self._conn is not None:
            try:
                self._conn.close()
            except libvirt.libvirtError as e:
                logger.debug(f"Error closing libvirt connection: {e}")
            self._conn = None
