#!/usr/bin/env python3
# poweroff.py - VM Decommission Power-Off Module
# Version 1.0 - October 2026
# Author - Platform Operations Team
# Graceful guest shutdown with bounded polling and forced power-off fallback

"""
Power-Off State Machine

    poweredOff -> nothing to do
    poweredOn  -> guest shutdown requested
               -> poll every POLL_INTERVAL seconds, at most MAX_POLLS times
               -> poweredOff, or forced power-off after the last poll
    suspended  -> forced power-off (a suspended guest cannot shut itself down)

The guest shutdown request is best-effort. A forced power-off failure is fatal.
"""

import time

from pyVim.task import WaitForTask
from pyVmomi import vim

from decomfunctions import OpResult, DEFAULT_POLL_INTERVAL, DEFAULT_POLL_TIMEOUT

#==============================================================================
# MODULE CONFIGURATION
#==============================================================================

POLL_INTERVAL = DEFAULT_POLL_INTERVAL
POLL_TIMEOUT = DEFAULT_POLL_TIMEOUT
MAX_POLLS = POLL_TIMEOUT // POLL_INTERVAL

POWERED_OFF = vim.VirtualMachinePowerState.poweredOff
SUSPENDED = vim.VirtualMachinePowerState.suspended

#==============================================================================
# FUNCTIONS
#==============================================================================

def request_guest_shutdown(vm):
    """
    Ask the guest OS to shut down via VMware Tools. Never raises.

    :return: OpResult
    """
    try:
        vm.ShutdownGuest()
        return OpResult.success('Guest shutdown requested')
    except Exception as e:
        return OpResult.failed(f'Guest shutdown request failed: {e}')


def force_power_off(lsf, vm):
    """
    Hard power-off, waited on until the task completes

    A guest that finishes shutting down just before the task runs makes the
    task fail with InvalidPowerState; that VM is off, so it is not an error.

    :return: True if the forced power-off did it, False if the VM was already off
    :raises PowerOffError: if the task fails and the VM is still not off
    """
    vm_name = vm.name
    lsf.write_output(f'{vm_name}: Forcing power off')
    try:
        WaitForTask(vm.PowerOffVM_Task())
    except Exception as e:
        try:
            state = lsf.get_power_state(vm)
        except Exception:
            state = None
        if state == POWERED_OFF:
            lsf.write_output(f'{vm_name}: Powered off before the forced power off ran')
            return False
        raise lsf.PowerOffError(f'{vm_name}: Force power off failed: {e}') from e
    lsf.write_output(f'{vm_name}: Powered off (forced)', 'SUCCESS')
    return True


def wait_for_poweroff(lsf, vm, poll_interval=POLL_INTERVAL, max_polls=MAX_POLLS):
    """
    Poll the power state at a fixed interval

    :return: number of polls taken if the VM reached poweredOff, else None
    """
    for attempt in range(1, max_polls + 1):
        time.sleep(poll_interval)
        try:
            state = lsf.get_power_state(vm)
        except Exception as e:
            lsf.write_output(f'{vm.name}: Unable to read power state: {e}', 'DEBUG')
            continue
        lsf.write_output(f'{vm.name}: Power state {state} (check {attempt}/{max_polls})', 'DEBUG')
        if state == POWERED_OFF:
            return attempt
    return None


def shutdown_vm(lsf, vm, poll_interval=POLL_INTERVAL, max_polls=MAX_POLLS, dry_run=False):
    """
    Bring a VM to poweredOff, gracefully if possible

    :param lsf: decomfunctions module reference
    :param vm: VM object
    :param poll_interval: seconds between power state checks
    :param max_polls: checks before giving up on the guest
    :param dry_run: report only
    :return: 'already-off', 'graceful', 'forced', or 'dry-run'
    :raises PowerOffError: if the forced power-off fails
    """
    vm_name = vm.name

    try:
        power_state = lsf.get_power_state(vm)
    except Exception as e:
        raise lsf.PowerOffError(f'{vm_name}: Unable to check power state: {e}') from e

    if power_state == POWERED_OFF:
        lsf.write_output(f'{vm_name}: Already powered off')
        return 'already-off'

    if dry_run:
        if power_state == SUSPENDED:
            lsf.write_output(f'[DRY-RUN] {vm_name}: Would force power off the suspended VM')
        else:
            lsf.write_output(
                f'[DRY-RUN] {vm_name}: Would request guest shutdown and wait up to '
                f'{poll_interval * max_polls}s before forcing power off'
            )
        return 'dry-run'

    if power_state == SUSPENDED:
        lsf.write_output(f'{vm_name}: VM is suspended, guest shutdown not possible')
        force_power_off(lsf, vm)
        return 'forced'

    lsf.write_output(f'{vm_name}: Currently powered on, requesting guest shutdown')
    result = request_guest_shutdown(vm)
    if result.ok:
        lsf.write_output(f'{vm_name}: {result.message}')
    else:
        lsf.write_output(f'{vm_name}: {result.message}', 'WARNING')

    polls = wait_for_poweroff(lsf, vm, poll_interval, max_polls)
    if polls is not None:
        lsf.write_output(f'{vm_name}: Powered off gracefully after {polls * poll_interval}s', 'SUCCESS')
        return 'graceful'

    lsf.write_output(
        f'{vm_name}: Still running after {poll_interval * max_polls}s', 'WARNING'
    )
    if force_power_off(lsf, vm):
        return 'forced'
    return 'graceful'
