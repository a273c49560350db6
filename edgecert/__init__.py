"""
Edge certificate renewal.

This package contains:
- logger: Centralized logging setup
- config_loader: Service configuration and per-run renewal configuration
- command: External command execution
- platform: IoT platform REST operations
- acme: acme.sh issuance wrapper
- archive: Encrypted backup/restore of the acme.sh state
- edge: Certificate replacement on the edge device
- helpers: Expiry helpers and the renewal decision
- notification: Status events
- renewal: Single-flight renewal coordinator
- scheduler: Randomized daily schedule
"""

from .logger import setup_logger, get_logger
from .config_loader import (
    load_config,
    resolve_renewal_config,
    Config,
    PlatformConfig,
    Settings,
    RenewalConfig,
    CertificateFile,
    ConfigurationError,
)
from .command import CommandRunner, SubprocessRunner, CommandResult, CommandTimeoutError
from .platform import PlatformClient, PlatformError
from .acme import issue_certificate, update_account_mail, IssuanceError
from .archive import AcmeArchive, ArchiveError
from .edge import (
    EdgeManagementClient,
    CertificateDetails,
    DeploymentTask,
    TaskStatus,
    DeploymentError,
    deploy_certificate,
)
from .helpers import should_renew, decide_renewal, RenewalDecision, DecisionReason
from .notification import NotificationManager, PlatformEventNotifier
from .renewal import RenewalCoordinator, RenewalRun, RenewalStatus, RenewalInProgressError
from .scheduler import RenewalScheduler, generate_random_daily_time

__version__ = "1.0.0"

__all__ = [
    # Logger
    "setup_logger",
    "get_logger",
    # Config
    "load_config",
    "resolve_renewal_config",
    "Config",
    "PlatformConfig",
    "Settings",
    "RenewalConfig",
    "CertificateFile",
    "ConfigurationError",
    # Commands
    "CommandRunner",
    "SubprocessRunner",
    "CommandResult",
    "CommandTimeoutError",
    # Platform
    "PlatformClient",
    "PlatformError",
    # Issuance
    "issue_certificate",
    "update_account_mail",
    "IssuanceError",
    # Archive
    "AcmeArchive",
    "ArchiveError",
    # Edge
    "EdgeManagementClient",
    "CertificateDetails",
    "DeploymentTask",
    "TaskStatus",
    "DeploymentError",
    "deploy_certificate",
    # Decision
    "should_renew",
    "decide_renewal",
    "RenewalDecision",
    "DecisionReason",
    # Notifications
    "NotificationManager",
    "PlatformEventNotifier",
    # Coordinator
    "RenewalCoordinator",
    "RenewalRun",
    "RenewalStatus",
    "RenewalInProgressError",
    "RenewalScheduler",
    "generate_random_daily_time",
]
