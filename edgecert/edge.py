"""
Certificate replacement on the edge device.

The edge management API replaces its certificate through a task: a renewal
request is created, certificate and key are uploaded against it, and the
task is polled until the edge reports a terminal state.

The edge may be addressed by IP with a self-signed certificate, so each
EdgeManagementClient owns a session with TLS verification disabled. Nothing
process-wide is changed and the session is closed when the client is.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import requests

from .config_loader import PlatformConfig, RenewalConfig
from .logger import get_logger
from .platform import build_session


DEFAULT_POLL_ATTEMPTS = 10
DEFAULT_POLL_INTERVAL_SECONDS = 10

_EXPIRY_FORMATS = (
    "%b %d %H:%M:%S %Y %Z",
    "%b %d %H:%M:%S %Y",
    "%Y-%m-%d %H:%M:%S",
)


class DeploymentError(Exception):
    """Raised when the edge did not accept the new certificate."""
    pass


class TaskStatus(Enum):
    """Status of a task on the edge."""
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "TaskStatus":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


@dataclass
class DeploymentTask:
    """A certificate renewal task as reported by the edge."""
    id: str
    status: TaskStatus
    raw_status: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass
class CertificateDetails:
    """Certificate currently installed on the edge."""
    subject: str
    issuer: Optional[str]
    expiry: Optional[datetime]
    signing_type: Optional[str] = None


def parse_expiry(value: Optional[str]) -> Optional[datetime]:
    """
    Parse the expiry reported by the edge.

    Accepts ISO 8601 (with or without ``Z``) and the openssl text form
    (``May  1 12:00:00 2025 GMT``). Naive values are taken as UTC.

    Returns:
        Timezone-aware datetime, or None if absent or unparseable
    """
    if not value or not isinstance(value, str):
        return None

    text = value.strip()
    parsed = None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        normalized = " ".join(text.split())
        for fmt in _EXPIRY_FORMATS:
            try:
                parsed = datetime.strptime(normalized, fmt)
                break
            except ValueError:
                continue

    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def edge_base_url(platform: PlatformConfig, config: RenewalConfig) -> str:
    """Base URL of the edge management API for this run."""
    if config.edge_target_override:
        return f"https://{config.edge_target_override}"
    return platform.base_url


class EdgeManagementClient:
    """
    Client for the edge management API.

    Use as a context manager so the insecure session never outlives the
    operation that needed it.
    """

    def __init__(
        self,
        base_url: str,
        session: requests.Session,
        timeout: int = 30,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session
        self.session.verify = False
        self.timeout = timeout
        self.logger = get_logger()

    @classmethod
    def for_config(
        cls,
        platform: PlatformConfig,
        config: RenewalConfig,
        timeout: int = 30,
    ) -> "EdgeManagementClient":
        """Client for the edge targeted by config, using the platform credentials."""
        session = build_session(platform, verify=False)
        return cls(edge_base_url(platform, config), session, timeout=timeout)

    def __enter__(self) -> "EdgeManagementClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        return self.session.request(method, f"{self.base_url}{path}", **kwargs)

    def get_certificate_details(self) -> CertificateDetails:
        """
        Read the certificate currently configured on the edge.

        Raises:
            DeploymentError: If the edge does not answer with 200
        """
        try:
            response = self._request("GET", "/edge/configuration/certificate")
        except requests.RequestException as e:
            raise DeploymentError(f"Unable to read current certificate: {e}")

        if response.status_code != 200:
            raise DeploymentError(f"Wrong response code: {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise DeploymentError(f"Malformed certificate details: {e}")
        if not isinstance(body, dict):
            raise DeploymentError("Malformed certificate details: expected a JSON object")

        return CertificateDetails(
            subject=body.get("subject", ""),
            issuer=body.get("signed_by"),
            expiry=parse_expiry(body.get("expiry")),
            signing_type=body.get("signing_type"),
        )

    def create_renewal_request(self) -> str:
        """
        Create an upload-type certificate renewal task.

        Returns:
            Task id
        """
        try:
            response = self._request(
                "POST",
                "/edge/configuration/certificate",
                json={"renewal_type": "upload"},
            )
        except requests.RequestException as e:
            raise DeploymentError(f"Unable to create cert renewal request: {e}")

        if response.status_code != 201:
            raise DeploymentError(
                f"Unable to create cert renewal request. Received status code: {response.status_code}"
            )
        try:
            return str(response.json()["id"])
        except (ValueError, KeyError, TypeError) as e:
            raise DeploymentError(f"Cert renewal request returned no task id: {e}")

    def upload_file(self, task_id: str, endpoint: str, file_path: Path, file_name: str) -> None:
        """
        Stream a file to the task's upload endpoint.

        Args:
            task_id: Renewal task id
            endpoint: ``certificate`` or ``certificate_key``
            file_path: Local file to send
            file_name: File name announced in Content-Disposition
        """
        headers = {
            "Content-Type": "application/octet-stream",
            "Content-Disposition": f'attachment; filename="{file_name}"',
        }
        try:
            with open(file_path, "rb") as f:
                response = self._request(
                    "POST",
                    f"/edge/upload/{task_id}/{endpoint}",
                    data=f,
                    headers=headers,
                )
        except (OSError, requests.RequestException) as e:
            raise DeploymentError(f"Unable to upload file {file_name}: {e}")

        if response.status_code != 201:
            raise DeploymentError(
                f"Unable to upload file: {file_name} (status code {response.status_code})"
            )

    def get_task(self, task_id: str) -> Optional[DeploymentTask]:
        """
        Read a task's status.

        Returns:
            The task, or None when the edge is not able to answer yet
        """
        try:
            response = self._request("GET", f"/edge/tasks/{task_id}")
        except requests.RequestException as e:
            self.logger.debug(f"Task {task_id} not reachable yet: {e}")
            return None

        if response.status_code != 200:
            self.logger.debug(f"Task {task_id} returned status code {response.status_code}")
            return None

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            self.logger.debug(f"Task {task_id} returned a malformed body")
            return None

        raw_status = body.get("status")
        return DeploymentTask(
            id=task_id,
            status=TaskStatus.parse(raw_status),
            raw_status=raw_status,
            failure_reason=body.get("failure_reason"),
        )


def fetch_current_certificate(client: EdgeManagementClient) -> Optional[CertificateDetails]:
    """
    Certificate details of the edge, or None if they cannot be read.

    A missing answer is not fatal: renewal then proceeds as if no
    certificate were installed.
    """
    logger = get_logger()
    try:
        details = client.get_certificate_details()
    except DeploymentError as e:
        logger.warning(f"Unable to retrieve current certificate details: {e}")
        return None

    logger.info(
        f"Current certificate: subject={details.subject}, issuer={details.issuer}, "
        f"expiry={details.expiry.isoformat() if details.expiry else 'unknown'}"
    )
    return details


def wait_for_task(
    client: EdgeManagementClient,
    task_id: str,
    attempts: int = DEFAULT_POLL_ATTEMPTS,
    interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> DeploymentTask:
    """
    Poll a task until it leaves the executing state.

    Each attempt waits ``interval`` seconds first. Answers other than 200 count
    as "not ready yet".

    Returns:
        The terminal task

    Raises:
        DeploymentError: If the task failed or is still executing after
            ``attempts`` polls
    """
    logger = get_logger()

    for attempt in range(1, attempts + 1):
        logger.debug(
            f"Waiting {interval} seconds before checking cert renewal task "
            f"({attempt}/{attempts})"
        )
        sleep(interval)

        task = client.get_task(task_id)
        if task is None:
            continue

        logger.info(f"Cert renewal task in status: {task.raw_status}")
        if task.failure_reason:
            logger.warning(task.failure_reason)

        if task.status == TaskStatus.EXECUTING:
            continue
        if task.status == TaskStatus.FAILED:
            raise DeploymentError(
                f"Renewal task failed: {task.failure_reason or 'no reason given'}"
            )
        if task.status == TaskStatus.UNKNOWN:
            logger.warning(f"Treating unexpected task status {task.raw_status!r} as terminal.")
        return task

    raise DeploymentError(f"Renewal task did not finish after {attempts} attempts.")


def deploy_certificate(
    client: EdgeManagementClient,
    config: RenewalConfig,
    attempts: int = DEFAULT_POLL_ATTEMPTS,
    interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> DeploymentTask:
    """
    Replace certificate and key of the edge with the freshly issued ones.

    The full chain is uploaded as ``certificate`` followed by the key as
    ``certificate_key``. A failed upload aborts the deployment; the task
    already created on the edge is left as is.

    Raises:
        DeploymentError: On any outcome other than a terminal, non-failed task
    """
    logger = get_logger()

    logger.debug("Creating cert renewal task")
    task_id = client.create_renewal_request()
    logger.debug(f"Cert renewal task {task_id} created")

    fullchain = config.files["cert_fullchain"]
    client.upload_file(task_id, "certificate", fullchain.path, fullchain.upload_name)
    logger.debug("certificate uploaded")

    key = config.files["key"]
    client.upload_file(task_id, "certificate_key", key.path, key.upload_name)
    logger.debug("certificate_key uploaded")

    task = wait_for_task(client, task_id, attempts=attempts, interval=interval, sleep=sleep)
    logger.info("Successfully renewed certificate of edge.")
    return task
