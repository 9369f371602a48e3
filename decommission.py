#!/usr/bin/env python3
# decommission.py - VM Decommission Orchestrator
# Version 1.0 - October 2026
# Author - Platform Operations Team
# Locate a VM across vCenter endpoints, power it off and mark it decommissioned

"""
VM Decommission Orchestration Script

Phases:
1. Credential setup
2. Connect to each endpoint in order (unreachable endpoints are skipped)
3. Locate the VM by exact name (first endpoint reporting it wins)
4. Power off: guest shutdown, 60s of polling, then forced power-off
5. Rename to _DoNotPowerOn-<name>
6. Disconnect every endpoint, on every exit path

Usage:
    python3 decommission.py web01 --user administrator@vsphere.local
    python3 decommission.py web01 --dry-run
    python3 decommission.py web01 --config decommission.ini
    python3 decommission.py --help

Exit codes:
    0   VM powered off (or already off) and renamed
    1   Any fatal condition
    130 Interrupted by user
"""

import sys
import argparse
import datetime

import decomfunctions
import poweroff

#==============================================================================
# SCRIPT CONFIGURATION
#==============================================================================

SCRIPT_NAME = 'decommission'
SCRIPT_VERSION = '1.0'
SCRIPT_DESCRIPTION = 'VM Decommission Orchestrator'

#==============================================================================
# ORCHESTRATION
#==============================================================================

def print_phase_header(lsf, phase_num: int, phase_name: str):
    lsf.write_output(f'--- Phase {phase_num}: {phase_name} ---')


def teardown(lsf, connections: dict):
    """Disconnect every endpoint, reporting failures without raising"""
    if not connections:
        return
    count = len(connections)
    results = lsf.disconnect_endpoints(connections)
    for host, result in results.items():
        if not result.ok:
            lsf.write_output(f'Disconnect from {host} failed: {result.message}', 'WARNING')
    lsf.write_output(f'Disconnected from {count} endpoint(s)')


def run(lsf, cfg, vm_name: str, secret) -> dict:
    """
    Decommission one VM

    :param lsf: decomfunctions module reference
    :param cfg: DecomConfig
    :param vm_name: exact VM name
    :param secret: SecretHandle
    :return: summary dict (endpoint, power, renamed, new_name)
    :raises DecommissionError: on any fatal condition, after teardown
    """
    connections = {}
    summary = {'endpoint': None, 'power': None, 'renamed': False, 'new_name': None}

    try:
        print_phase_header(lsf, 1, 'Connect Endpoints')
        lsf.connect_endpoints(cfg, secret, connections)
        lsf.write_output(f'Connected to {len(connections)} of {len(cfg.endpoints)} endpoint(s)')

        print_phase_header(lsf, 2, 'Locate VM')
        host, vm = lsf.locate_vm(connections, vm_name, cfg)
        summary['endpoint'] = host

        print_phase_header(lsf, 3, 'Power Off')
        summary['power'] = poweroff.shutdown_vm(
            lsf, vm,
            poll_interval=cfg.poll_interval,
            max_polls=cfg.max_polls,
            dry_run=cfg.dry_run
        )

        print_phase_header(lsf, 4, 'Rename')
        new_name = lsf.decom_name(vm_name, cfg.prefix)
        summary['renamed'] = lsf.rename_vm(vm, new_name, dry_run=cfg.dry_run)
        summary['new_name'] = new_name
    finally:
        teardown(lsf, connections)

    return summary


def main(argv=None, lsf=None) -> int:
    """
    Parse arguments, run the decommission and map the outcome to an exit code
    """
    args = parse_args(argv)

    if lsf is None:
        lsf = decomfunctions

    try:
        file_config = lsf.read_config_file(args.config) if args.config else None
        cfg = lsf.load_config(
            file_config,
            endpoints=split_list(args.endpoints),
            log_file=args.logfile,
            user=args.user,
            port=args.port,
            check_duplicates=args.check_duplicates or None,
            warn_on_connect_failure=args.warn_connect_failures or None,
            dry_run=args.dry_run,
            debug=args.debug,
        )
    except lsf.DecommissionError as e:
        print(f'ERROR: {e}', file=sys.stderr)
        return 1

    lsf.init(cfg)

    start_time = datetime.datetime.now()
    lsf.write_output(f'{SCRIPT_DESCRIPTION} v{SCRIPT_VERSION} started for VM {args.vm_name}')
    lsf.write_output(f'Log file: {cfg.log_file}', 'DEBUG')
    if cfg.dry_run:
        lsf.write_output('*** DRY RUN MODE - No changes will be made ***', 'WARNING')

    try:
        with lsf.SecretHandle(cfg.user, lsf.resolve_password(args.password)) as secret:
            summary = run(lsf, cfg, args.vm_name, secret)
    except lsf.DecommissionError as e:
        lsf.write_output(f'{type(e).__name__}: {e}', 'ERROR')
        return 1
    except KeyboardInterrupt:
        lsf.write_output('Decommission interrupted by user', 'ERROR')
        return 130

    elapsed = datetime.datetime.now() - start_time
    lsf.write_output(
        f'VM {args.vm_name} on {summary["endpoint"]}: power={summary["power"]}, '
        f'name={summary["new_name"]} ({elapsed.total_seconds():.0f}s)',
        'SUCCESS'
    )
    return 0


def split_list(value):
    if not value:
        return None
    return [item.strip() for item in value.split(',') if item.strip()]


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog=SCRIPT_NAME,
        description=SCRIPT_DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Decommission a VM using the default endpoint list
  decommission.py web01 --user administrator@vsphere.local

  # Preview without changes
  decommission.py web01 --dry-run

  # Custom endpoints and log file
  decommission.py web01 --endpoints vc1.lab,vc2.lab --logfile /var/log/decom.log

Password sources (first match wins):
  --password, DECOM_PASSWORD environment variable, interactive prompt

Config file format:
  [DECOMMISSION]
  endpoints = vcsa-01a.site-a.vcf.lab
      vcsa-02a.site-a.vcf.lab
  user = administrator@vsphere.local
  logfile = /var/log/decommission.log
  poll_interval = 5
  poll_timeout = 60
  check_duplicates = false
"""
    )

    parser.add_argument('vm_name', help='Exact name of the VM to decommission')

    parser.add_argument('--user', '-u', default=None,
                        help='Endpoint username (or DECOM_USER)')

    parser.add_argument('--password', '-p', default=None,
                        help='Endpoint password (or DECOM_PASSWORD, or prompt)')

    parser.add_argument('--endpoints', '-e', default=None,
                        help='Comma-separated endpoint hostnames (default: built-in list of ten)')

    parser.add_argument('--logfile', '-l', default=None,
                        help='Log file path (default: date-stamped file beside the script)')

    parser.add_argument('--config', '-c', default=None,
                        help='ini file with a [DECOMMISSION] section')

    parser.add_argument('--port', type=int, default=None,
                        help='HTTPS port of the endpoints (default: 443)')

    parser.add_argument('--check-duplicates', action='store_true',
                        help='Query every endpoint and warn if the VM name exists more than once')

    parser.add_argument('--warn-connect-failures', action='store_true',
                        help='Log a warning for each endpoint that fails to connect')

    parser.add_argument('--dry-run', '-n', action='store_true',
                        help='Show what would be done without making changes')

    parser.add_argument('--debug', '-d', action='store_true',
                        help='Enable debug logging')

    parser.add_argument('--version', '-v', action='version',
                        version=f'{SCRIPT_NAME} v{SCRIPT_VERSION}')

    return parser.parse_args(argv)


def cli():
    sys.exit(main())


if __name__ == '__main__':
    cli()
