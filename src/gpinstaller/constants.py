"""Shared constants for gpinstaller."""

DEFAULT_CONFIG_FILES = (".gpinstaller.yml", "gpdb_config.conf")

DEFAULT_INSTALL_DIR = "/usr/local/greenplum-db"
DEFAULT_DATA_DIR = "/data"
DEFAULT_ADMIN_USER = "gpadmin"
DEFAULT_DATABASE_NAME = "tdi"
DEFAULT_COORDINATOR_PORT = 5432
DEFAULT_PORT_BASE = 40000
DEFAULT_MIRROR_PORT_BASE = 50000
# Replication ports sit 1000 and 2000 above the mirror base.
REPLICATION_PORT_OFFSETS = (1000, 2000)
FIREWALL_PORT_SPAN = 10
DEFAULT_INSTALL_FILES_DIR = "files"

DEFAULT_POOL_WIDTH = 8
MAX_POOL_WIDTH = 64
DEFAULT_COMMAND_TIMEOUT_SECONDS = 600.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_BACKOFF_SECONDS = 2.0
DEFAULT_CHANNEL_IDLE_MINUTES = 30
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10

MIN_PASSWORD_LENGTH = 8

# ssh exits 255 when the connection itself fails.
SSH_CONNECTION_EXIT_CODE = 255
DEFAULT_RETRYABLE_EXIT_CODES = frozenset({SSH_CONNECTION_EXIT_CODE})

SUPPORTED_OS_IDS = ("centos", "rhel", "rocky", "almalinux", "ol")
SUPPORTED_OS_MAJOR_VERSIONS = (7, 8, 9)
SUPPORTED_GREENPLUM_MAJOR = 7
MIN_MEMORY_GB = 8
RECOMMENDED_MEMORY_GB = 16
MIN_DISK_GB = 10

GREENPLUM_RPM_PATTERN = "greenplum-db-*.rpm"
PXF_RPM_PATTERNS = ("pxf-gp7-*.rpm",)
MADLIB_RPM_PATTERNS = ("madlib*gp7*.rpm", "madlib-oss-gp7-*.rpm", "madlib-*.rpm")
POSTGIS_RPM_PATTERNS = ("postgis*gp7*.rpm", "postgis-*.rpm")
PXF_HOME = "/usr/local/pxf-gp7"

REQUIRED_HOST_COMMANDS = ("sudo",)
OPTIONAL_HOST_COMMANDS = ("sshpass",)

BACKUP_SUFFIX = "gpinstaller-backup"
REMOTE_TEMP_DIR = "/tmp"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_VALIDATION = 2
EXIT_CONNECTIVITY = 3
EXIT_AUTHENTICATION = 4
EXIT_INTERRUPTED = 130
