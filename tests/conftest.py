"""Test configuration and fixtures for kvm-spinup."""

import pytest
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from kvm_spinup.config import AppConfig  # noqa: E402
from kvm_spinup.models import Distribution, VmSpec  # noqa: E402

SHA512_HASH = "$6$saltsalt$" + "a" * 86


@pytest.fixture
def app_config(tmp_path):
    """Configuration rooted in a temporary work directory with fast timings."""
    return AppConfig(
        work_dir=str(tmp_path / "work"),
        install_timeout=1800,
        poll_interval=10,
        stuck_threshold=300,
        probe_attempts=2,
        probe_interval=0,
        inter_vm_delay=0,
        min_free_disk_gib=0,
    )


@pytest.fixture
def make_spec():
    """Factory for accepted VM specs."""

    def factory(hostname="web-01", distribution=Distribution.ROCKY, **overrides):
        values = dict(
            distribution=distribution,
            hostname=hostname,
            ram_mib=2048,
            vcpus=2,
            disk_gib=30,
            timezone="Africa/Cairo",
            user_password="UserPass123",
            root_password="RootPass123",
        )
        values.update(overrides)
        return VmSpec(**values)

    return factory


@pytest.fixture
def sample_spec(make_spec):
    return make_spec()
