"""
Encrypted backup of the ACME client's state directory.

acme.sh keeps its account key, configuration and issued certificates in
``.acme.sh``. The directory is archived (tar.gz), encrypted with a per-tenant
password, and stored as a platform binary so a fresh container can pick up
where the previous one left off.

The encrypted format is the one written by
``openssl enc -aes256 -base64 -pbkdf2 -iter 100000``, so archives can also be
inspected with plain openssl.
"""

import base64
import io
import os
import secrets
import string
import tarfile
from pathlib import Path
from typing import Optional

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config_loader import CREDENTIALS_PREFIX, Config, TenantOptions
from .logger import get_logger
from .platform import PlatformClient


OPENSSL_MAGIC = b"Salted__"
SALT_SIZE = 8
KEY_SIZE = 32
IV_SIZE = 16
PBKDF2_ITERATIONS = 100_000
BASE64_LINE_LENGTH = 64

ENCRYPTION_KEY_LENGTH = 32
ENCRYPTION_KEY_ALPHABET = string.ascii_letters + string.digits


class ArchiveError(Exception):
    """Raised when the state archive cannot be built, encrypted or restored."""
    pass


def _derive_key_and_iv(password: str, salt: bytes):
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE + IV_SIZE,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    material = kdf.derive(password.encode())
    return material[:KEY_SIZE], material[KEY_SIZE:]


def encrypt_archive(data: bytes, password: str, salt: Optional[bytes] = None) -> bytes:
    """
    Encrypt data with AES-256-CBC and a PBKDF2-derived key.

    Args:
        data: Plain archive bytes
        password: Encryption password
        salt: Optional 8-byte salt (random when omitted)

    Returns:
        Base64 text (64 characters per line) of ``Salted__ + salt + ciphertext``
    """
    salt = salt or os.urandom(SALT_SIZE)
    if len(salt) != SALT_SIZE:
        raise ArchiveError(f"Salt must be {SALT_SIZE} bytes")

    key, iv = _derive_key_and_iv(password, salt)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(data) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    encoded = base64.b64encode(OPENSSL_MAGIC + salt + ciphertext)
    lines = [
        encoded[i:i + BASE64_LINE_LENGTH]
        for i in range(0, len(encoded), BASE64_LINE_LENGTH)
    ]
    return b"\n".join(lines) + b"\n"


def decrypt_archive(blob: bytes, password: str) -> bytes:
    """
    Reverse encrypt_archive.

    Raises:
        ArchiveError: If the blob is malformed or the password is wrong
    """
    try:
        raw = base64.b64decode(blob)
    except (ValueError, TypeError) as e:
        raise ArchiveError(f"Archive is not valid base64: {e}")

    if not raw.startswith(OPENSSL_MAGIC) or len(raw) < len(OPENSSL_MAGIC) + SALT_SIZE:
        raise ArchiveError("Archive is missing the salt header")

    salt = raw[len(OPENSSL_MAGIC):len(OPENSSL_MAGIC) + SALT_SIZE]
    ciphertext = raw[len(OPENSSL_MAGIC) + SALT_SIZE:]
    if not ciphertext or len(ciphertext) % IV_SIZE:
        raise ArchiveError("Archive ciphertext has an invalid length")

    key, iv = _derive_key_and_iv(password, salt)
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError:
        raise ArchiveError("Failed to decrypt archive (wrong encryption key?)")


def pack_directory(state_dir: Path) -> bytes:
    """
    Create a gzip-compressed tar of state_dir.

    Members are stored below the directory's own name, mirroring
    ``tar -czf - -C <parent> <name>``.
    """
    if not state_dir.is_dir():
        raise ArchiveError(f"State directory not found: {state_dir}")

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        tar.add(str(state_dir), arcname=state_dir.name)
    return buffer.getvalue()


def unpack_archive(data: bytes, target_dir: Path) -> None:
    """Extract a gzip-compressed tar into target_dir, overwriting files."""
    target_dir.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
            tar.extractall(path=str(target_dir), filter="data")
    except (tarfile.TarError, OSError) as e:
        raise ArchiveError(f"Failed to extract archive: {e}")


def generate_encryption_key(length: int = ENCRYPTION_KEY_LENGTH) -> str:
    """Random alphanumeric password for the archive."""
    return "".join(secrets.choice(ENCRYPTION_KEY_ALPHABET) for _ in range(length))


class AcmeArchive:
    """
    Backup and restore of the ACME state directory via platform binaries.

    At most one archive is kept: the previous one is deleted only after the
    new one has been uploaded. Running several service instances against the
    same tenant is not supported (they may race on creating the key).
    """

    def __init__(self, client: PlatformClient, config: Config):
        self.client = client
        self.config = config
        self.settings = config.settings
        self.category = config.platform.application_name
        self.owner = config.platform.user
        self.logger = get_logger()

    def _find_newest_archive_id(self) -> Optional[str]:
        return self.client.find_newest_binary(self.settings.archive_file_name, self.owner)

    def get_encryption_key(self) -> str:
        """
        Read the archive password from the tenant options, creating one if needed.

        Persisting a newly generated key is best-effort: when it fails, the
        key is still used for this run but a later restore will not be able
        to decrypt the archive.
        """
        key = TenantOptions.ARCHIVE_ENCRYPTION_KEY
        try:
            options = self.client.list_tenant_options(self.category)
        except Exception as e:
            self.logger.warning(f"Unable to read tenant options: {e}")
            options = {}

        encryption_key = options.get(key) or options.get(f"{CREDENTIALS_PREFIX}{key}")
        if encryption_key:
            return encryption_key

        self.logger.info("No archive encryption key found, generating a new one.")
        encryption_key = generate_encryption_key()
        try:
            self.client.create_tenant_option(
                self.category, f"{CREDENTIALS_PREFIX}{key}", encryption_key
            )
        except Exception as e:
            self.logger.warning(f"Failed to store archive encryption key: {e}")

        return encryption_key

    def create_encrypted_archive(self, password: str) -> Path:
        """Pack and encrypt the state directory to the local archive file."""
        archive_path = self.settings.archive_path
        blob = encrypt_archive(pack_directory(self.settings.state_dir), password)
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        archive_path.write_bytes(blob)
        self.logger.debug(f"Encrypted archive written to {archive_path}")
        return archive_path

    def backup(self) -> bool:
        """
        Upload a fresh encrypted archive and drop the previous one.

        Never raises: the certificate has already been issued when this runs,
        so a failed backup only costs the ability to restore later.

        Returns:
            True if the new archive was uploaded
        """
        try:
            previous_id = self._find_newest_archive_id()
            password = self.get_encryption_key()
            archive_path = self.create_encrypted_archive(password)
            new_id = self.client.upload_binary(
                self.settings.archive_file_name, archive_path.read_bytes()
            )
            self.logger.info(f"Uploaded ACME archive ({new_id}).")
        except Exception as e:
            self.logger.error(f"Failed to back up ACME state: {e}")
            return False

        if previous_id and previous_id != new_id:
            try:
                self.client.delete_binary(previous_id)
                self.logger.debug(f"Deleted previous ACME archive ({previous_id}).")
            except Exception as e:
                self.logger.warning(f"Failed to delete previous ACME archive {previous_id}: {e}")

        return True

    def restore(self) -> bool:
        """
        Restore the state directory from the newest archive, if there is one.

        Never raises; a failed restore leaves whatever local state exists.

        Returns:
            True if an archive was downloaded and extracted
        """
        try:
            newest_id = self._find_newest_archive_id()
            if not newest_id:
                self.logger.info("No archive found to restore.")
                return False

            self.logger.debug(f"Newest archive: {newest_id}")
            blob = self.client.download_binary(newest_id)

            archive_path = self.settings.archive_path
            archive_path.parent.mkdir(parents=True, exist_ok=True)
            archive_path.write_bytes(blob)
            self.logger.debug("Archive stored on filesystem.")

            password = self.get_encryption_key()
            unpack_archive(decrypt_archive(blob, password), Path(self.settings.base_path))
        except Exception as e:
            self.logger.warning(f"Failed to restore previous ACME state: {e}")
            return False

        self.logger.info("Archive extracted.")
        return True
