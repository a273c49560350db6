"""
Configuration loading, validation, and parsing.

Two layers of configuration exist:

- The service configuration (how to reach the IoT platform, where the ACME
  client keeps its state). Loaded once at start-up from a YAML file or from
  environment variables.
- The renewal configuration. Resolved fresh for every run from the tenant
  options of the application category, since options may change between
  scheduled executions.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from .logger import get_logger


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


class TenantOptions:
    """Tenant option keys interpreted by the service itself."""
    PROVIDER = "dns_provider"
    WILDCARD_SUB = "add_wildcard_sub"
    WILDCARD_MAIN = "add_wildcard_main"
    SERVER = "server"
    DEBUG = "debug"
    DNS_SLEEP = "dnssleep"
    DOMAIN = "domain"
    EDGE_IP = "edge_ip"
    SKIP_CERT_REPLACEMENT = "skip_cert_replacement"
    INSECURE = "insecure"
    RENEW_DAYS_BEFORE_EXPIRY = "renew_days_before_expiry"
    MAIL = "mail"
    CHALLENGE_ALIAS = "challenge_alias"
    ARCHIVE_ENCRYPTION_KEY = "archive_encryption_key"


# Options that control the service and must never reach the DNS plugin env
NON_ENV_OPTION_KEYS = frozenset({
    TenantOptions.PROVIDER,
    TenantOptions.WILDCARD_SUB,
    TenantOptions.WILDCARD_MAIN,
    TenantOptions.SERVER,
    TenantOptions.DEBUG,
    TenantOptions.DNS_SLEEP,
    TenantOptions.DOMAIN,
    TenantOptions.EDGE_IP,
    TenantOptions.SKIP_CERT_REPLACEMENT,
    TenantOptions.INSECURE,
    TenantOptions.RENEW_DAYS_BEFORE_EXPIRY,
    TenantOptions.MAIL,
    TenantOptions.CHALLENGE_ALIAS,
    TenantOptions.ARCHIVE_ENCRYPTION_KEY,
})

# Encrypted tenant options carry this prefix on write
CREDENTIALS_PREFIX = "credentials."

DEFAULT_ACME_SERVER = "letsencrypt_test"
DEFAULT_RENEW_DAYS = 20


@dataclass
class PlatformConfig:
    """Connection details for the IoT platform."""
    base_url: str
    tenant: str
    user: str
    password: str
    application_name: str
    application_key: Optional[str] = None

    @property
    def username(self) -> str:
        """Basic auth user name in the platform's tenant/user form."""
        return f"{self.tenant}/{self.user}"


@dataclass
class Settings:
    """Process-wide settings."""
    base_path: str = "/root"
    acme_dir_name: str = ".acme.sh"
    archive_file_name: str = "acme.sh.tar.gz.enc"
    lock_file_name: str = ".renewal.lock"
    acme_command: str = "acme.sh"
    edge_tenant: str = "edge"
    poll_attempts: int = 10
    poll_interval_seconds: int = 10
    request_timeout_seconds: int = 30
    default_renew_days: int = DEFAULT_RENEW_DAYS
    default_server: str = DEFAULT_ACME_SERVER

    @property
    def state_dir(self) -> Path:
        """Directory where the ACME client keeps accounts, keys and certs."""
        return Path(self.base_path) / self.acme_dir_name

    @property
    def archive_path(self) -> Path:
        """Local location of the encrypted state archive."""
        return Path(self.base_path) / self.archive_file_name

    @property
    def lock_path(self) -> Path:
        """Lock file shared by every renewal process on this host."""
        return Path(self.base_path) / self.lock_file_name


@dataclass
class Config:
    """Root service configuration object."""
    platform: PlatformConfig
    settings: Settings = field(default_factory=Settings)


@dataclass(frozen=True)
class CertificateFile:
    """A certificate artifact on disk and the file name used when uploading it."""
    path: Path
    upload_name: str


@dataclass(frozen=True)
class RenewalConfig:
    """
    Immutable configuration of a single renewal run.

    domains[0] is the primary domain; it names the certificate files and must
    match the subject of the certificate currently installed on the edge.
    """
    domains: Tuple[str, ...]
    dns_provider: Optional[str]
    acme_server: str
    renew_threshold_days: int
    files: Mapping[str, CertificateFile]
    skip_remote_deployment: bool = False
    allow_insecure_tls: bool = False
    debug: bool = False
    edge_target_override: Optional[str] = None
    contact_mail: Optional[str] = None
    challenge_alias: Optional[str] = None
    dns_sleep_seconds: int = 0
    environment: Mapping[str, str] = field(default_factory=dict)

    @property
    def primary_domain(self) -> str:
        return self.domains[0]

    def describe(self) -> Dict[str, Any]:
        """Loggable view of the configuration, without environment values."""
        return {
            "domains": list(self.domains),
            "dns_provider": self.dns_provider,
            "acme_server": self.acme_server,
            "renew_threshold_days": self.renew_threshold_days,
            "skip_remote_deployment": self.skip_remote_deployment,
            "allow_insecure_tls": self.allow_insecure_tls,
            "debug": self.debug,
            "edge_target_override": self.edge_target_override,
            "contact_mail": self.contact_mail,
            "challenge_alias": self.challenge_alias,
            "dns_sleep_seconds": self.dns_sleep_seconds,
            "environment_keys": sorted(self.environment),
        }


def _expand_env_vars(value: Any) -> Any:
    """
    Expand ${VAR_NAME} references in string values (recursively).

    Unknown variables are left untouched.
    """
    if isinstance(value, str):
        pattern = r"\$\{([^}]+)\}"

        def replace(match):
            return os.environ.get(match.group(1), match.group(0))

        return re.sub(pattern, replace, value)

    elif isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [_expand_env_vars(item) for item in value]

    return value


def _platform_from_env() -> Dict[str, Any]:
    return {
        "base_url": os.environ.get("C8Y_BASEURL", ""),
        "tenant": os.environ.get("C8Y_TENANT", ""),
        "user": os.environ.get("C8Y_USER", ""),
        "password": os.environ.get("C8Y_PASSWORD", ""),
        "application_name": os.environ.get("APPLICATION_NAME", ""),
        "application_key": os.environ.get("APPLICATION_KEY"),
    }


def _value(data: Dict[str, Any], key: str) -> str:
    """String value of key; unresolved ${VAR} references count as unset."""
    value = data.get(key)
    if value is None:
        return ""
    value = str(value)
    if re.fullmatch(r"\$\{[^}]+\}", value):
        return ""
    return value


def _parse_platform(data: Dict[str, Any]) -> PlatformConfig:
    """
    Parse and validate the platform section.

    Args:
        data: Raw platform data

    Returns:
        PlatformConfig instance
    """
    platform = PlatformConfig(
        base_url=_value(data, "base_url").rstrip("/"),
        tenant=_value(data, "tenant"),
        user=_value(data, "user"),
        password=_value(data, "password"),
        application_name=_value(data, "application_name"),
        application_key=_value(data, "application_key") or None,
    )

    missing = [
        name for name in ("base_url", "tenant", "user", "password", "application_name")
        if not getattr(platform, name)
    ]
    if missing:
        raise ConfigurationError(
            f"Missing platform configuration: {', '.join(missing)}"
        )
    if not platform.base_url.startswith(("https://", "http://")):
        raise ConfigurationError(
            f"Platform base_url must start with http:// or https://: {platform.base_url}"
        )

    return platform


def _parse_settings(data: Dict[str, Any]) -> Settings:
    """
    Parse and validate the settings section.

    Args:
        data: Raw settings data

    Returns:
        Settings instance
    """
    defaults = Settings()
    try:
        settings = Settings(
            base_path=str(data.get("base_path", defaults.base_path)),
            acme_dir_name=str(data.get("acme_dir_name", defaults.acme_dir_name)),
            archive_file_name=str(data.get("archive_file_name", defaults.archive_file_name)),
            lock_file_name=str(data.get("lock_file_name", defaults.lock_file_name)),
            acme_command=str(data.get("acme_command", defaults.acme_command)),
            edge_tenant=str(data.get("edge_tenant", defaults.edge_tenant)),
            poll_attempts=int(data.get("poll_attempts", defaults.poll_attempts)),
            poll_interval_seconds=int(
                data.get("poll_interval_seconds", defaults.poll_interval_seconds)
            ),
            request_timeout_seconds=int(
                data.get("request_timeout_seconds", defaults.request_timeout_seconds)
            ),
            default_renew_days=int(data.get("default_renew_days", defaults.default_renew_days)),
            default_server=str(data.get("default_server", defaults.default_server)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid settings value: {e}")

    if settings.poll_attempts < 1:
        raise ConfigurationError("poll_attempts must be at least 1")
    if settings.poll_interval_seconds < 0:
        raise ConfigurationError("poll_interval_seconds must not be negative")
    if settings.default_renew_days < 1:
        raise ConfigurationError("default_renew_days must be at least 1")

    return settings


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load and validate the service configuration.

    With a path, the YAML file is read (sections ``platform`` and
    ``settings``, ``${VAR}`` references expanded). Without a path, the
    platform connection is taken from C8Y_BASEURL, C8Y_TENANT, C8Y_USER,
    C8Y_PASSWORD, APPLICATION_NAME and APPLICATION_KEY.

    Args:
        config_path: Optional path to the configuration file

    Returns:
        Validated Config instance

    Raises:
        ConfigurationError: If configuration is invalid
    """
    logger = get_logger()

    if config_path is None:
        platform = _parse_platform(_platform_from_env())
        logger.info("Loaded configuration from environment")
        logger.info(f"  Platform: {platform.base_url} (tenant {platform.tenant})")
        return Config(platform=platform, settings=Settings())

    path = Path(config_path)

    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    if path.suffix not in (".yaml", ".yml"):
        raise ConfigurationError(
            f"Configuration file must be YAML (.yaml or .yml): {config_path}"
        )

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file: {e}")
    except IOError as e:
        raise ConfigurationError(f"Failed to read configuration file: {e}")

    if not raw_data:
        raise ConfigurationError("Configuration file is empty")

    data = _expand_env_vars(raw_data)

    if "platform" not in data:
        raise ConfigurationError("Missing 'platform' section in configuration")

    platform = _parse_platform(data.get("platform") or {})
    settings = _parse_settings(data.get("settings") or {})

    logger.info(f"Loaded configuration from {config_path}")
    logger.info(f"  Platform: {platform.base_url} (tenant {platform.tenant})")
    logger.info(f"  ACME state directory: {settings.state_dir}")

    return Config(platform=platform, settings=settings)


def _is_true(value: Optional[str]) -> bool:
    return value == "true"


def _is_non_env_key(key: str) -> bool:
    if key.startswith(CREDENTIALS_PREFIX):
        key = key[len(CREDENTIALS_PREFIX):]
    return key in NON_ENV_OPTION_KEYS


def build_acme_environment(options: Mapping[str, str]) -> Dict[str, str]:
    """
    Select the options that are passed to the ACME client as environment.

    DNS provider credentials (e.g. CF_Token) are stored as plain tenant options
    next to the service's own options; everything that is not a service
    option is forwarded.

    Args:
        options: Tenant options of the application category

    Returns:
        Mapping of environment variable name to value
    """
    logger = get_logger()
    environment = {}

    for key, value in options.items():
        if _is_non_env_key(key):
            logger.debug(f"Skipping option: {key}")
            continue
        logger.debug(f"Set option {key}")
        environment[key] = value

    return environment


def derive_domains(domain: str, options: Mapping[str, str]) -> Tuple[str, ...]:
    """
    Build the ordered domain list for the certificate.

    Examples:
        >>> derive_domains("edge.example.com", {"add_wildcard_sub": "true"})
        ('edge.example.com', '*.edge.example.com')
        >>> derive_domains("edge.example.com", {"add_wildcard_main": "true"})
        ('*.example.com',)
    """
    domains = [domain]
    if _is_true(options.get(TenantOptions.WILDCARD_SUB)):
        domains.append(f"*.{domain}")
    if _is_true(options.get(TenantOptions.WILDCARD_MAIN)):
        domains[0] = re.sub(r"[^.]*\.", "*.", domains[0], count=1)
    return tuple(domains)


def _parse_int(value: Optional[str], default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def resolve_renewal_config(
    options: Mapping[str, str],
    settings: Settings,
    fallback_domain: Optional[str] = None,
) -> RenewalConfig:
    """
    Turn the flat tenant option mapping into a RenewalConfig.

    Args:
        options: Tenant options of the application category
        settings: Service settings (state directory, defaults)
        fallback_domain: Domain to use when the ``domain`` option is unset

    Returns:
        RenewalConfig for this run

    Raises:
        ConfigurationError: If no domain can be determined or a numeric
            option is malformed
    """
    domain = options.get(TenantOptions.DOMAIN) or fallback_domain
    if not domain:
        raise ConfigurationError("No domain configured and no fallback domain available")

    domains = derive_domains(domain, options)
    primary = domains[0]
    cert_dir = settings.state_dir / primary

    renew_days_raw = options.get(TenantOptions.RENEW_DAYS_BEFORE_EXPIRY)
    if renew_days_raw:
        try:
            renew_days = int(renew_days_raw)
        except ValueError:
            raise ConfigurationError(
                f"Invalid {TenantOptions.RENEW_DAYS_BEFORE_EXPIRY}: {renew_days_raw!r}"
            )
    else:
        renew_days = settings.default_renew_days

    return RenewalConfig(
        domains=domains,
        dns_provider=options.get(TenantOptions.PROVIDER) or None,
        acme_server=options.get(TenantOptions.SERVER) or settings.default_server,
        renew_threshold_days=renew_days,
        files={
            "cert": CertificateFile(cert_dir / f"{primary}.cer", f"{primary}.crt"),
            "cert_fullchain": CertificateFile(
                cert_dir / "fullchain.cer", f"{primary}-fullchain.crt"
            ),
            "key": CertificateFile(cert_dir / f"{primary}.key", f"{primary}.key"),
        },
        skip_remote_deployment=_is_true(options.get(TenantOptions.SKIP_CERT_REPLACEMENT)),
        allow_insecure_tls=_is_true(options.get(TenantOptions.INSECURE)),
        debug=_is_true(options.get(TenantOptions.DEBUG)),
        edge_target_override=options.get(TenantOptions.EDGE_IP) or None,
        contact_mail=options.get(TenantOptions.MAIL) or None,
        challenge_alias=options.get(TenantOptions.CHALLENGE_ALIAS) or None,
        dns_sleep_seconds=max(_parse_int(options.get(TenantOptions.DNS_SLEEP), 0), 0),
        environment=build_acme_environment(options),
    )


def validate_renewal_options(options: Mapping[str, str]) -> None:
    """
    Check the raw tenant options before anything is looked up remotely.

    Raises:
        ConfigurationError: If no DNS provider is set
    """
    if not options.get(TenantOptions.PROVIDER):
        get_logger().error("No DNS provider set.")
        raise ConfigurationError("Current configuration is invalid/incomplete.")


def validate_renewal_config(config: RenewalConfig) -> None:
    """
    Check the renewal configuration before any external side effect.

    Raises:
        ConfigurationError: If the configuration is incomplete
    """
    logger = get_logger()
    errors = []

    if not config.dns_provider:
        errors.append("No DNS provider set.")

    if errors:
        for error in errors:
            logger.error(error)
        logger.info(f"Current configuration: {config.describe()}")
        raise ConfigurationError("Current configuration is invalid/incomplete.")
