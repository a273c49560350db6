"""
End-to-end renewal workflow.

The coordinator resolves the configuration, decides whether to renew, drives
acme.sh, backs up its state and replaces the certificate on the edge. At most
one run executes at a time; triggers arriving during a run are dropped.
"""

import fcntl
import json
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import IO, Any, Callable, Dict, Optional

from .acme import issue_certificate, update_account_mail
from .archive import AcmeArchive
from .command import CommandRunner, SubprocessRunner
from .config_loader import (
    Config,
    RenewalConfig,
    TenantOptions,
    resolve_renewal_config,
    validate_renewal_config,
    validate_renewal_options,
)
from .edge import EdgeManagementClient, deploy_certificate, fetch_current_certificate
from .helpers import decide_renewal
from .logger import get_logger
from .notification import (
    FORCED_TRIGGERED,
    RENEWAL_FAILED,
    RENEWAL_SKIPPED,
    RENEWAL_SUCCEEDED,
    SCHEDULED_TRIGGERED,
    NotificationManager,
)
from .platform import PlatformClient


class RenewalInProgressError(Exception):
    """Raised when a run is requested while another one is executing."""
    pass


class RenewalStatus(Enum):
    """Outcome of a renewal trigger."""
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    REJECTED = "rejected"


@dataclass
class RenewalRun:
    """State of one trigger, from start to outcome."""
    forced: bool
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    status: Optional[RenewalStatus] = None
    message: str = ""
    error: Optional[BaseException] = None

    def finish(self, status: RenewalStatus, message: str, error: Optional[BaseException] = None) -> None:
        self.status = status
        self.message = message
        self.error = error
        self.completed_at = datetime.now(timezone.utc)

    @property
    def succeeded(self) -> bool:
        return self.status in (RenewalStatus.SUCCEEDED, RenewalStatus.SKIPPED)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "forced": self.forced,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "status": self.status.value.upper() if self.status else None,
            "message": self.message,
            "error": str(self.error) if self.error else None,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


EdgeClientFactory = Callable[[RenewalConfig], EdgeManagementClient]


class RenewalCoordinator:
    """
    Runs renewals with single-flight semantics.

    The guard is a non-blocking lock: acquiring it is the atomic
    check-and-set, and it is released in a ``finally`` on every exit path.
    Besides the in-process lock, an exclusive ``flock`` on
    ``settings.lock_path`` keeps a one-shot process (``--force``, ``--run``)
    from running next to the serving one.
    """

    def __init__(
        self,
        config: Config,
        client: PlatformClient,
        runner: Optional[CommandRunner] = None,
        notifications: Optional[NotificationManager] = None,
        archive: Optional[AcmeArchive] = None,
        edge_client_factory: Optional[EdgeClientFactory] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.settings = config.settings
        self.client = client
        self.runner = runner or SubprocessRunner()
        self.notifications = notifications or NotificationManager()
        self.archive = archive or AcmeArchive(client, config)
        self.edge_client_factory = edge_client_factory or self._default_edge_client
        self.sleep = sleep
        self.logger = get_logger()
        self._lock = threading.Lock()
        self._lock_file: Optional[IO[str]] = None

    def _default_edge_client(self, renewal_config: RenewalConfig) -> EdgeManagementClient:
        return EdgeManagementClient.for_config(
            self.config.platform,
            renewal_config,
            timeout=self.settings.request_timeout_seconds,
        )

    def _acquire_file_lock(self) -> Optional[IO[str]]:
        lock_path = self.settings.lock_path
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_file = open(lock_path, "w")
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            lock_file.close()
            return None
        except OSError:
            lock_file.close()
            raise
        return lock_file

    def try_acquire(self) -> bool:
        """
        Claim the single-flight guard without waiting.

        Raises:
            OSError: If the lock file cannot be opened or locked
        """
        if not self._lock.acquire(blocking=False):
            return False
        try:
            lock_file = self._acquire_file_lock()
        except OSError:
            self._lock.release()
            raise
        if lock_file is None:
            self.logger.info(f"Another process holds {self.settings.lock_path}.")
            self._lock.release()
            return False
        self._lock_file = lock_file
        return True

    def release(self) -> None:
        lock_file, self._lock_file = self._lock_file, None
        try:
            if lock_file is not None:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
                lock_file.close()
        finally:
            self._lock.release()

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    def restore_state(self) -> bool:
        """Restore the ACME state from the newest archive (start-up only)."""
        return self.archive.restore()

    def load_renewal_config(self) -> RenewalConfig:
        """
        Resolve the renewal configuration from the current tenant options.

        Raises:
            ConfigurationError: If the configuration is incomplete
            PlatformError: If the options cannot be read
        """
        category = self.config.platform.application_name
        options = self.client.list_tenant_options(category)
        self.logger.info(f"Found {len(options)} available options.")
        validate_renewal_options(options)

        fallback_domain = None
        if not options.get(TenantOptions.DOMAIN):
            fallback_domain = self.client.get_tenant_domain(self.settings.edge_tenant)
            self.logger.info(f"No domain option set, using tenant domain {fallback_domain}")

        renewal_config = resolve_renewal_config(options, self.settings, fallback_domain)
        validate_renewal_config(renewal_config)
        return renewal_config

    def run_renewal(self, forced: bool = False) -> bool:
        """
        Run one renewal if no other run is executing.

        Args:
            forced: Skip the subject and expiry checks

        Returns:
            True if a certificate was issued (and deployed unless skipped),
            False if renewal was not due

        Raises:
            RenewalInProgressError: If another run holds the guard
            ConfigurationError, IssuanceError, DeploymentError, PlatformError:
                If the run failed
        """
        if not self.try_acquire():
            raise RenewalInProgressError("A certificate renewal is already in progress.")
        try:
            return self._renew(forced)
        finally:
            self.release()

    def _renew(self, forced: bool) -> bool:
        self.logger.section(f"Certificate renewal ({'forced' if forced else 'scheduled'})")

        renewal_config = self.load_renewal_config()

        if not forced:
            with self.edge_client_factory(renewal_config) as edge:
                current = fetch_current_certificate(edge)
            decision = decide_renewal(renewal_config, current, forced=False)
            self.logger.info(decision.describe())
            if not decision.proceed:
                return False
        else:
            self.logger.info("Forced renewal, skipping subject and expiry checks.")

        self.logger.subsection("Issuance")
        issue_certificate(renewal_config, self.runner, self.settings)

        if renewal_config.contact_mail:
            # Best-effort, the result does not affect the run
            update_account_mail(renewal_config, self.runner, self.settings)

        self.logger.subsection("Backup")
        # Best-effort, a failed backup does not fail the run
        self.archive.backup()

        if renewal_config.skip_remote_deployment:
            self.logger.info("Skipping replacement of certificate and key of edge.")
        else:
            self.logger.subsection("Deployment")
            self.logger.info("Starting replacement of certificate and key of edge.")
            with self.edge_client_factory(renewal_config) as edge:
                deploy_certificate(
                    edge,
                    renewal_config,
                    attempts=self.settings.poll_attempts,
                    interval=self.settings.poll_interval_seconds,
                    sleep=self.sleep,
                )

        self.logger.success("Finished certificate renewal.")
        return True

    def trigger(self, forced: bool = False) -> RenewalRun:
        """
        Entry point for schedulers and request handlers.

        Publishes status events around the run and never raises.

        Returns:
            RenewalRun describing the outcome
        """
        run = RenewalRun(forced=forced)

        if self.in_progress:
            self.logger.info("Certificate renewal already in progress, ignoring trigger.")
            run.finish(RenewalStatus.REJECTED, "A certificate renewal is already in progress.")
            return run

        self.notifications.notify(FORCED_TRIGGERED if forced else SCHEDULED_TRIGGERED)

        try:
            renewed = self.run_renewal(forced)
        except RenewalInProgressError as e:
            self.logger.info("Certificate renewal already in progress, ignoring trigger.")
            run.finish(RenewalStatus.REJECTED, str(e), e)
            return run
        except Exception as e:
            self.logger.failure(f"Certificate renewal failed: {e}")
            run.finish(RenewalStatus.FAILED, RENEWAL_FAILED, e)
            self.notifications.notify(RENEWAL_FAILED)
            return run

        if renewed:
            run.finish(RenewalStatus.SUCCEEDED, RENEWAL_SUCCEEDED)
            self.notifications.notify(RENEWAL_SUCCEEDED)
        else:
            run.finish(RenewalStatus.SKIPPED, RENEWAL_SKIPPED)
            self.notifications.notify(RENEWAL_SKIPPED)
        return run
