"""
acme.sh wrapper.

Issues or renews the edge certificate with a DNS-01 challenge. The ACME
protocol and the DNS provider plugins are entirely acme.sh's business; this
module only builds the invocation and checks what it left on disk.
"""

from pathlib import Path
from typing import List, Optional

from cryptography import x509

from .command import CommandRunner, CommandTimeoutError
from .config_loader import RenewalConfig, Settings
from .logger import get_logger


# Lower bound for the issuance timeout; DNS propagation waits add on top
ISSUE_BASE_TIMEOUT_SECONDS = 300
ISSUE_MIN_TIMEOUT_SECONDS = 1200
ACCOUNT_UPDATE_TIMEOUT_SECONDS = 200


class IssuanceError(Exception):
    """Raised when the certificate could not be issued or renewed."""
    pass


def load_certificate(cert_path: Path) -> x509.Certificate:
    """
    Load the first certificate of a PEM file.

    Args:
        cert_path: Path to the PEM file (a full chain is fine)

    Returns:
        Parsed certificate

    Raises:
        OSError: If the file cannot be read
        ValueError: If the content is not a PEM certificate
    """
    with open(cert_path, "rb") as f:
        cert_data = f.read()
    return x509.load_pem_x509_certificate(cert_data)


def is_certificate_present(cert_path: Path) -> bool:
    """True if cert_path holds a parseable PEM certificate."""
    try:
        load_certificate(cert_path)
    except (OSError, ValueError):
        return False
    return True


def issue_timeout_seconds(dns_sleep_seconds: int) -> int:
    """Timeout for the issue/renew call; never shorter than the DNS sleep."""
    return max(ISSUE_BASE_TIMEOUT_SECONDS + dns_sleep_seconds, ISSUE_MIN_TIMEOUT_SECONDS)


def build_issue_args(config: RenewalConfig, renew: bool) -> List[str]:
    """
    Build the acme.sh arguments for issuing or renewing.

    Args:
        config: Renewal configuration
        renew: Renew the existing certificate instead of issuing a new one

    Returns:
        Argument list (without the executable)
    """
    args = []

    if config.allow_insecure_tls:
        args.append("--insecure")

    args.extend(["--force", "--renew" if renew else "--issue"])
    args.extend(["--server", config.acme_server])

    if config.challenge_alias:
        args.extend(["--challenge-alias", config.challenge_alias])

    args.extend(["--dns", config.dns_provider])

    for domain in config.domains:
        args.extend(["-d", domain])

    if config.dns_sleep_seconds > 0:
        args.extend(["--dnssleep", str(config.dns_sleep_seconds)])

    if config.debug:
        args.append("--debug")

    return args


def issue_certificate(
    config: RenewalConfig,
    runner: CommandRunner,
    settings: Optional[Settings] = None,
) -> None:
    """
    Issue or renew the certificate for config.domains and verify the result.

    An existing, parseable full chain means acme.sh already tracks the
    certificate, so it is renewed; otherwise a new one is issued.

    Args:
        config: Renewal configuration
        runner: Command runner used to invoke acme.sh
        settings: Service settings (for the acme.sh executable)

    Raises:
        IssuanceError: If acme.sh fails, times out, or no certificate is
            present afterwards
    """
    logger = get_logger()
    settings = settings or Settings()
    fullchain_path = config.files["cert_fullchain"].path

    renew = is_certificate_present(fullchain_path)
    if renew:
        logger.info("Certificate already present, attempting to renew it.")
    else:
        logger.info("Issuing a new certificate.")

    args = build_issue_args(config, renew=renew)
    timeout = issue_timeout_seconds(config.dns_sleep_seconds)

    logger.info(f"Issuing cert for domain(s): {', '.join(config.domains)}")
    logger.debug(f"acme.sh arguments: {' '.join(args)} (timeout {timeout}s)")

    try:
        result = runner.run(
            settings.acme_command,
            args,
            env=dict(config.environment),
            timeout=timeout,
        )
    except CommandTimeoutError as e:
        raise IssuanceError(f"acme.sh timed out: {e}")

    if not result.succeeded:
        logger.error(f"acme.sh stderr: {result.stderr}")
        raise IssuanceError(f"acme.sh failed with exit code {result.exit_code}")

    try:
        certificate = load_certificate(fullchain_path)
    except (OSError, ValueError) as e:
        logger.error("Failed to verify that the certificate is actually present.")
        raise IssuanceError(f"Certificate not present after issuance: {fullchain_path} ({e})")

    logger.info(f"Certificate is present, valid until {certificate.not_valid_after_utc.isoformat()}")


def update_account_mail(
    config: RenewalConfig,
    runner: CommandRunner,
    settings: Optional[Settings] = None,
) -> bool:
    """
    Update the contact mail of the ACME account.

    Best-effort: failures are logged and reported through the return value,
    never raised.

    Returns:
        True if acme.sh accepted the update
    """
    logger = get_logger()
    settings = settings or Settings()

    if not config.contact_mail:
        return False

    args = ["--update-account", "-m", config.contact_mail, "--server", config.acme_server]
    try:
        result = runner.run(settings.acme_command, args, timeout=ACCOUNT_UPDATE_TIMEOUT_SECONDS)
    except Exception as e:
        logger.warning(f"Failed to update mail of account: {e}")
        return False

    if not result.succeeded:
        logger.warning(f"Failed to update mail of account (exit code {result.exit_code}).")
        return False

    logger.info(f"Updated account mail to {config.contact_mail}")
    return True
