# decomfunctions.py - VM Decommission Core Functions Library
# Version 1.0 - October 2026
# Author - Platform Operations Team
# Credentials, configuration, logging and vSphere helpers for decommission.py

import os
import sys
import datetime
import logging
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from pyVim import connect
from pyVim.task import WaitForTask
from pyVmomi import vim

# Default logging level is WARNING (other levels are DEBUG, INFO, ERROR and CRITICAL)
logging.basicConfig(level=logging.WARNING)

#==============================================================================
# STATIC VARIABLES
#==============================================================================

script_dir = os.path.dirname(os.path.abspath(__file__))

DECOM_PREFIX = '_DoNotPowerOn-'
CONFIG_SECTION = 'DECOMMISSION'
COMMENT_CHARS = '#;'

DEFAULT_PORT = 443
DEFAULT_POLL_INTERVAL = 5   # seconds between power state checks
DEFAULT_POLL_TIMEOUT = 60   # graceful shutdown window in seconds

DEFAULT_ENDPOINTS = [
    'vcsa-01a.site-a.vcf.lab',
    'vcsa-02a.site-a.vcf.lab',
    'vcsa-03a.site-a.vcf.lab',
    'vcsa-04a.site-a.vcf.lab',
    'vcsa-05a.site-a.vcf.lab',
    'vcsa-01b.site-b.vcf.lab',
    'vcsa-02b.site-b.vcf.lab',
    'vcsa-03b.site-b.vcf.lab',
    'vcsa-04b.site-b.vcf.lab',
    'vcsa-05b.site-b.vcf.lab',
]

# Environment variables consulted when the CLI does not supply a value
ENV_USER = 'DECOM_USER'
ENV_PASSWORD = 'DECOM_PASSWORD'

LEVELS = ['DEBUG', 'INFO', 'SUCCESS', 'WARNING', 'ERROR']

# Log sink state (set by init())
logfile = None
debug_output = False
console_output = True
_logfile_warned = False


def default_logfile(now: Optional[datetime.datetime] = None) -> str:
    """Date-stamped log file beside this script"""
    now = now or datetime.datetime.now()
    return os.path.join(script_dir, f'decommission-{now.strftime("%Y-%m-%d")}.log')


#==============================================================================
# ERRORS AND RESULTS
#==============================================================================

class DecommissionError(Exception):
    """Base class for every fatal decommission condition"""


class CredentialError(DecommissionError):
    pass


class ConfigError(DecommissionError):
    pass


class NoEndpointsError(DecommissionError):
    pass


class VmNotFoundError(DecommissionError):
    pass


class PowerOffError(DecommissionError):
    pass


class RenameError(DecommissionError):
    pass


@dataclass
class OpResult:
    """
    Outcome of a best-effort operation.

    Best-effort calls (guest shutdown request, disconnect) never raise; they
    hand back an OpResult and the caller decides how loudly to report it.
    """
    ok: bool
    message: str = ''
    warning: bool = False

    @classmethod
    def success(cls, message: str = '') -> 'OpResult':
        return cls(ok=True, message=message)

    @classmethod
    def failed(cls, message: str) -> 'OpResult':
        return cls(ok=False, message=message, warning=True)


#==============================================================================
# CREDENTIALS
#==============================================================================

class SecretHandle:
    """
    Scoped credential for endpoint logins.

    The password is kept in a mutable buffer so it can be zeroed once the run
    is over. Use as a context manager, or call wipe() explicitly.
    """

    def __init__(self, username: str, password: str):
        if not username or not username.strip():
            raise CredentialError('Username must not be empty')
        if not password:
            raise CredentialError('Password must not be empty')
        self.username = username.strip()
        self._buffer = bytearray(password.encode('utf-8'))
        self._wiped = False

    @property
    def wiped(self) -> bool:
        return self._wiped

    def reveal(self) -> str:
        """Return the password for a single SDK call"""
        if self._wiped:
            raise CredentialError('Credential has already been wiped')
        return self._buffer.decode('utf-8')

    def wipe(self):
        for i in range(len(self._buffer)):
            self._buffer[i] = 0
        self._wiped = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.wipe()
        return False

    def __repr__(self):
        return f'SecretHandle(username={self.username!r}, password=***)'


def resolve_password(cli_value: Optional[str] = None, prompt: bool = True) -> str:
    """
    Get the password with priority order:
    1. Command line value
    2. DECOM_PASSWORD environment variable
    3. Interactive prompt (if prompt=True)

    :return: Password string, or empty string if no source supplied one
    """
    if cli_value:
        return cli_value

    env_value = os.environ.get(ENV_PASSWORD)
    if env_value:
        return env_value

    if prompt and sys.stdin.isatty():
        import getpass
        return getpass.getpass('Enter endpoint password: ')

    return ''


#==============================================================================
# CONFIGURATION
#==============================================================================

@dataclass
class DecomConfig:
    """Everything the orchestrator needs to know besides the VM name and secret"""
    endpoints: List[str] = field(default_factory=lambda: list(DEFAULT_ENDPOINTS))
    log_file: str = field(default_factory=default_logfile)
    user: str = ''
    port: int = DEFAULT_PORT
    poll_interval: int = DEFAULT_POLL_INTERVAL
    poll_timeout: int = DEFAULT_POLL_TIMEOUT
    check_duplicates: bool = False
    warn_on_connect_failure: bool = False
    dry_run: bool = False
    debug: bool = False
    prefix: str = DECOM_PREFIX

    @property
    def max_polls(self) -> int:
        """Number of power state checks inside the graceful window"""
        return max(1, self.poll_timeout // self.poll_interval)

    def validate(self):
        if not self.endpoints:
            raise ConfigError('Endpoint list is empty')
        if self.poll_interval <= 0:
            raise ConfigError(f'poll_interval must be positive, got {self.poll_interval}')
        if self.poll_timeout < self.poll_interval:
            raise ConfigError(
                f'poll_timeout ({self.poll_timeout}) must be at least poll_interval ({self.poll_interval})'
            )
        if not 0 < self.port < 65536:
            raise ConfigError(f'Invalid port: {self.port}')


def get_config_list(config: ConfigParser, section: str, option: str, fallback: list = None) -> list:
    """
    Read a list option such as the endpoint list.

    One entry per line, or comma separated on a single line. Entries
    disabled with a leading '#' or ';' are dropped, so an endpoint can be
    taken out of rotation without deleting it:

        [DECOMMISSION]
        endpoints = vcsa-01a.site-a.vcf.lab
            ;vcsa-02a.site-a.vcf.lab
            vcsa-01b.site-b.vcf.lab

    :return: enabled entries in file order, or fallback ([] by default)
    """
    if not config.has_option(section, option):
        return [] if fallback is None else fallback

    raw_value = config.get(section, option) or ''
    separator = '\n' if '\n' in raw_value else ','

    entries = [entry.strip() for entry in raw_value.split(separator)]
    entries = [entry for entry in entries if entry and entry[0] not in COMMENT_CHARS]

    if not entries:
        return [] if fallback is None else fallback
    return entries


def get_config_value(config: ConfigParser, section: str, option: str, fallback: str = '') -> str:
    """Scalar option (user, logfile, port...); a disabled or blank value means fallback"""
    if not config.has_option(section, option):
        return fallback

    value = config.get(section, option).strip()
    if not value or value[0] in COMMENT_CHARS:
        return fallback
    return value


def read_config_file(path: str) -> ConfigParser:
    """Read an ini file, raising ConfigError if it is missing or malformed"""
    if not os.path.isfile(path):
        raise ConfigError(f'Config file not found: {path}')
    config = ConfigParser()
    try:
        config.read(path, encoding='utf-8')
    except ConfigParserError as e:
        raise ConfigError(f'Failed to parse {path}: {e}') from e
    return config


def load_config(config: Optional[ConfigParser] = None, **overrides) -> DecomConfig:
    """
    Build a DecomConfig from built-in defaults, then the [DECOMMISSION]
    section of an ini file, then explicit overrides (None values are ignored).
    """
    cfg = DecomConfig()

    if config is not None and config.has_section(CONFIG_SECTION):
        endpoints = get_config_list(config, CONFIG_SECTION, 'endpoints')
        if endpoints:
            cfg.endpoints = endpoints
        cfg.user = get_config_value(config, CONFIG_SECTION, 'user', cfg.user)
        cfg.log_file = get_config_value(config, CONFIG_SECTION, 'logfile', cfg.log_file)
        try:
            cfg.port = int(get_config_value(config, CONFIG_SECTION, 'port', str(cfg.port)))
            cfg.poll_interval = int(get_config_value(
                config, CONFIG_SECTION, 'poll_interval', str(cfg.poll_interval)))
            cfg.poll_timeout = int(get_config_value(
                config, CONFIG_SECTION, 'poll_timeout', str(cfg.poll_timeout)))
            if config.has_option(CONFIG_SECTION, 'check_duplicates'):
                cfg.check_duplicates = config.getboolean(CONFIG_SECTION, 'check_duplicates')
            if config.has_option(CONFIG_SECTION, 'warn_on_connect_failure'):
                cfg.warn_on_connect_failure = config.getboolean(
                    CONFIG_SECTION, 'warn_on_connect_failure')
        except ValueError as e:
            raise ConfigError(f'Invalid value in [{CONFIG_SECTION}]: {e}') from e

    for key, value in overrides.items():
        if value is None:
            continue
        if not hasattr(cfg, key):
            raise ConfigError(f'Unknown configuration option: {key}')
        setattr(cfg, key, value)

    if not cfg.user:
        cfg.user = os.environ.get(ENV_USER, '')

    cfg.validate()
    return cfg


#==============================================================================
# OUTPUT AND LOGGING
#==============================================================================

class Colors:
    """ANSI escape sequences for console output"""
    RESET = '\033[0m'
    DIM = '\033[2m'
    RED = '\033[91m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    CYAN = '\033[96m'


LEVEL_COLORS = {
    'DEBUG': Colors.DIM,
    'INFO': Colors.CYAN,
    'SUCCESS': Colors.GREEN,
    'WARNING': Colors.YELLOW,
    'ERROR': Colors.RED,
}


def init(cfg: DecomConfig):
    """
    Point the log sink at the configured file and set debug output
    """
    global logfile, debug_output, _logfile_warned
    logfile = cfg.log_file
    debug_output = cfg.debug
    _logfile_warned = False
    if cfg.debug:
        logging.getLogger().setLevel(logging.DEBUG)


def use_color() -> bool:
    if os.environ.get('NO_COLOR'):
        return False
    return hasattr(sys.stdout, 'isatty') and sys.stdout.isatty()


def format_line(msg, level='INFO', now: Optional[datetime.datetime] = None) -> str:
    timestamp = (now or datetime.datetime.now()).strftime('%Y-%m-%d %H:%M:%S')
    return f'[{timestamp}] [{level}] {msg}'


def write_output(msg, level='INFO', **kwargs):
    """
    Write a timestamped, leveled line to the console and the log file

    :param msg: Message to write
    :param level: DEBUG, INFO, SUCCESS, WARNING or ERROR
    :param kwargs:
        logfile - specific logfile path (default: the one set by init())
        console - override console output setting (True/False)
    """
    global _logfile_warned

    level = level.upper()
    if level not in LEVELS:
        level = 'INFO'
    if level == 'DEBUG' and not debug_output:
        return

    formatted_msg = format_line(msg, level)

    lfile = kwargs.get('logfile', logfile)
    print_to_console = kwargs.get('console', console_output)

    if lfile:
        try:
            log_dir = os.path.dirname(lfile)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            with open(lfile, 'a', encoding='utf-8') as f:
                f.write(formatted_msg + '\n')
        except OSError as e:
            # Logging to file is optional, the run carries on
            if not _logfile_warned:
                _logfile_warned = True
                warning = format_line(f'Could not write to log file {lfile}: {e}', 'WARNING')
                print(_colorize(warning, 'WARNING'), file=sys.stderr)

    if print_to_console:
        print(_colorize(formatted_msg, level))


def _colorize(line: str, level: str) -> str:
    if not use_color():
        return line
    return f'{LEVEL_COLORS.get(level, "")}{line}{Colors.RESET}'


#==============================================================================
# VSPHERE CONNECTION FUNCTIONS
#==============================================================================

def connect_vc(host, secret: SecretHandle, port=DEFAULT_PORT):
    """
    Connect to a vCenter or ESXi host

    :param host: vCenter/ESXi hostname
    :param secret: SecretHandle with the login
    :param port: HTTPS port
    :return: ServiceInstance (raises on failure)
    """
    return connect.SmartConnect(
        host=host,
        user=secret.username,
        pwd=secret.reveal(),
        port=port,
        disableSslCertValidation=True
    )


def connect_endpoints(cfg: DecomConfig, secret: SecretHandle,
                      connections: Optional[Dict[str, object]] = None) -> Dict[str, object]:
    """
    Connect to every endpoint in order, skipping the ones that fail

    Each session is added to `connections` as soon as it is open, so the
    caller can disconnect it even if a later connect is interrupted.

    :param connections: dict to fill (a new one if None)
    :return: dict of {hostname: ServiceInstance} in connection order
    :raises NoEndpointsError: if nothing connected
    """
    if connections is None:
        connections = {}
    for host in cfg.endpoints:
        write_output(f'Connecting to {host}...', 'DEBUG')
        try:
            si = connect_vc(host, secret, cfg.port)
        except CredentialError:
            raise
        except Exception as e:
            level = 'WARNING' if cfg.warn_on_connect_failure else 'DEBUG'
            write_output(f'Failed to connect to {host}: {e}', level)
            continue
        connections[host] = si
        write_output(f'Connected to {host}')

    if not connections:
        raise NoEndpointsError(
            f'Unable to connect to any of {len(cfg.endpoints)} endpoint(s)'
        )
    return connections


def disconnect_vc(si) -> OpResult:
    """Disconnect one session, never raises"""
    try:
        connect.Disconnect(si)
        return OpResult.success()
    except Exception as e:
        return OpResult.failed(str(e))


def disconnect_endpoints(connections: Dict[str, object]) -> Dict[str, OpResult]:
    """
    Disconnect all sessions and clear the connection map

    :return: dict of {hostname: OpResult}
    """
    results = {}
    for host, si in connections.items():
        results[host] = disconnect_vc(si)
    connections.clear()
    return results


#==============================================================================
# VM LOOKUP AND MUTATION
#==============================================================================

def get_vm(si, name):
    """
    Get a VM by exact name

    :param si: ServiceInstance
    :param name: VM name
    :return: VM object or None
    """
    content = si.RetrieveContent()
    container = content.viewManager.CreateContainerView(
        content.rootFolder, [vim.VirtualMachine], True
    )
    try:
        for vm in container.view:
            if vm.name == name:
                return vm
        return None
    finally:
        container.Destroy()


def decom_name(name: str, prefix: str = DECOM_PREFIX) -> str:
    """Name a VM gets once decommissioned"""
    return f'{prefix}{name}'


def find_vm(connections: Dict[str, object], name: str,
            check_duplicates: bool = False) -> Tuple[Optional[str], Optional[object]]:
    """
    Search the connected endpoints in order for a VM named exactly `name`

    The first endpoint reporting a match wins. With check_duplicates the
    remaining endpoints are queried as well and any other match is reported.

    :return: (hostname, vm) or (None, None)
    """
    found_host, found_vm = None, None
    for host, si in connections.items():
        write_output(f'Searching {host} for {name}', 'DEBUG')
        vm = get_vm(si, name)
        if vm is None:
            continue
        if found_vm is None:
            found_host, found_vm = host, vm
            write_output(f'Found VM {name} on {host}')
            if not check_duplicates:
                break
        else:
            write_output(
                f'Duplicate VM name {name} also exists on {host}; acting on the copy at {found_host}',
                'WARNING'
            )
    return found_host, found_vm


def locate_vm(connections: Dict[str, object], name: str, cfg: DecomConfig) -> Tuple[str, object]:
    """
    Find the VM by exact name on the connected endpoints

    :raises VmNotFoundError: if no endpoint reports it
    """
    host, vm = find_vm(connections, name, cfg.check_duplicates)
    if vm is not None:
        return host, vm

    raise VmNotFoundError(f'VM {name} not found on any of {len(connections)} connected endpoint(s)')


def get_power_state(vm):
    return vm.runtime.powerState


def rename_vm(vm, new_name, dry_run=False) -> bool:
    """
    Rename a VM unless it already carries the new name

    :return: True if a rename was issued (or would be, in dry run)
    :raises RenameError: if the rename task fails
    """
    current = vm.name
    if current == new_name:
        write_output(f'VM is already named {new_name}, no rename needed')
        return False

    if dry_run:
        write_output(f'[DRY-RUN] Would rename {current} to {new_name}')
        return True

    try:
        WaitForTask(vm.Rename_Task(new_name))
    except Exception as e:
        raise RenameError(f'Failed to rename {current} to {new_name}: {e}') from e

    write_output(f'Renamed {current} to {new_name}', 'SUCCESS')
    return True
