#!/usr/bin/env python3
# conftest.py - VM Decommission Pytest Configuration and Fixtures
# Version 1.0 - October 2026
# Author - Platform Operations Team
# Shared fixtures for all test modules

import pytest
import os
import sys
import tempfile
from unittest.mock import MagicMock, patch

# Add parent directory to path for imports
parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, parent_dir)

import decomfunctions

#==============================================================================
# FAKE VSPHERE OBJECTS
#==============================================================================

class FakeRuntime:
    def __init__(self, vm):
        self._vm = vm

    @property
    def powerState(self):
        return self._vm.read_power_state()


class FakeVM:
    """
    Stand-in for vim.VirtualMachine

    off_after_polls: once a guest shutdown was requested, the VM reports
    poweredOff on this power state read (None = never powers off by itself)
    off_during_force: the guest finishes shutting down while the forced
    power-off is being issued, so the task fails on an already-off VM
    """

    def __init__(self, name, power_state='poweredOn', off_after_polls=None,
                 shutdown_fails=False, power_off_fails=False, rename_fails=False,
                 off_during_force=False):
        self.name = name
        self.state = power_state
        self.off_after_polls = off_after_polls
        self.shutdown_fails = shutdown_fails
        self.power_off_fails = power_off_fails
        self.rename_fails = rename_fails
        self.off_during_force = off_during_force
        self.runtime = FakeRuntime(self)
        self.shutdown_requested = False
        self.reads_after_shutdown = 0
        self.shutdown_calls = 0
        self.power_off_calls = 0
        self.rename_calls = []

    def read_power_state(self):
        if self.shutdown_requested and self.state == 'poweredOn':
            self.reads_after_shutdown += 1
            if self.off_after_polls is not None and self.reads_after_shutdown >= self.off_after_polls:
                self.state = 'poweredOff'
        return self.state

    def ShutdownGuest(self):
        self.shutdown_calls += 1
        if self.shutdown_fails:
            raise RuntimeError('VMware Tools not running')
        self.shutdown_requested = True

    def PowerOffVM_Task(self):
        self.power_off_calls += 1
        if self.off_during_force:
            self.state = 'poweredOff'
            raise RuntimeError('The attempted operation cannot be performed in the current state (Powered off)')
        if self.power_off_fails:
            raise RuntimeError('Permission denied')
        self.state = 'poweredOff'
        return MagicMock(name='PowerOffTask')

    def Rename_Task(self, new_name):
        self.rename_calls.append(new_name)
        if self.rename_fails:
            raise RuntimeError('Name already in use')
        self.name = new_name
        return MagicMock(name='RenameTask')


def make_si(vms=None):
    """ServiceInstance whose container view lists the given VMs"""
    si = MagicMock()
    content = si.RetrieveContent.return_value
    content.viewManager.CreateContainerView.return_value.view = list(vms or [])
    return si


#==============================================================================
# FIXTURES - Mock Objects
#==============================================================================

@pytest.fixture
def fake_vm():
    return FakeVM


@pytest.fixture
def fake_si():
    return make_si


@pytest.fixture
def mock_lsf():
    """Create a mock decomfunctions module with the real error types"""
    mock = MagicMock()

    mock.DecommissionError = decomfunctions.DecommissionError
    mock.PowerOffError = decomfunctions.PowerOffError
    mock.RenameError = decomfunctions.RenameError
    mock.VmNotFoundError = decomfunctions.VmNotFoundError
    mock.NoEndpointsError = decomfunctions.NoEndpointsError
    mock.OpResult = decomfunctions.OpResult

    mock.write_output = MagicMock()
    mock.get_power_state = decomfunctions.get_power_state
    mock.decom_name = decomfunctions.decom_name

    return mock


@pytest.fixture
def decom_config(temp_dir):
    return decomfunctions.DecomConfig(
        endpoints=['vc-01.lab', 'vc-02.lab', 'vc-03.lab'],
        log_file=os.path.join(temp_dir, 'decom.log'),
        user='administrator@vsphere.local',
    )


@pytest.fixture
def secret():
    with decomfunctions.SecretHandle('administrator@vsphere.local', 'MOCK_PW_CHECK_VALUE') as handle:
        yield handle


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture(autouse=True)
def reset_log_sink():
    """Keep init() side effects from leaking between tests"""
    yield
    decomfunctions.logfile = None
    decomfunctions.debug_output = False
    decomfunctions._logfile_warned = False


#==============================================================================
# FIXTURES - Mock vSphere Operations
#==============================================================================

@pytest.fixture
def no_sleep():
    """Make power state polling instant"""
    with patch('poweroff.time.sleep') as mock_sleep:
        yield mock_sleep


@pytest.fixture
def mock_wait_for_task():
    with patch('poweroff.WaitForTask') as poweroff_wait, \
            patch('decomfunctions.WaitForTask') as decom_wait:
        yield poweroff_wait, decom_wait


@pytest.fixture
def endpoint_inventory():
    """
    Patch SmartConnect/Disconnect against a {host: si} inventory.
    Hosts missing from the inventory fail to authenticate; an exception
    stored as a host's value is raised when that host is contacted.
    """
    inventory = {}

    def fake_connect(host=None, **kwargs):
        if host not in inventory:
            raise ConnectionError(f'Cannot complete login for {host}')
        si = inventory[host]
        if isinstance(si, BaseException):
            raise si
        return si

    with patch('decomfunctions.connect.SmartConnect', side_effect=fake_connect) as smart_connect, \
            patch('decomfunctions.connect.Disconnect') as disconnect:
        yield inventory, smart_connect, disconnect


#==============================================================================
# MARKERS
#==============================================================================

def pytest_configure(config):
    """Configure custom markers"""
    config.addinivalue_line(
        "markers", "e2e: end-to-end runs of the decommission orchestrator against fake endpoints"
    )
