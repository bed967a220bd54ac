"""
Storage backends for backup artifacts.

Supports:
- LocalStorage: Store in a local directory (confined to its root)
- S3Storage: Upload to AWS S3 (or an S3-compatible endpoint)
- SFTPStorage: Upload to a remote host over SSH/SFTP

Every backend implements the StorageBackend contract and is used as a
context manager so its connection is released on every exit path.
"""

import os
import re
import shutil
import posixpath
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Type
import logging

import boto3
import paramiko
from botocore.exceptions import ClientError, BotoCoreError
from paramiko import SSHClient, AutoAddPolicy

from restore.exceptions import BackupIOError, ConfigurationError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB
DOWNLOAD_CHUNK_SIZE = 1024 * 1024

_DRIVE_PATTERN = re.compile(r'^[A-Za-z]:')


class StorageError(BackupIOError):
    """Raised when storage operation fails."""
    pass


def normalize_remote_path(remote_path: str) -> str:
    """Convert a remote path to forward slashes."""
    if remote_path is None or not remote_path.strip():
        raise ValidationError("Remote path cannot be empty")
    return remote_path.replace('\\', '/')


class StorageBackend(ABC):
    """
    Contract shared by all storage backends.

    Remote paths use '/' separators (backslashes are accepted) and follow
    backups/<group>/<artifact>.
    """

    storage_type = None

    def __init__(self):
        self._closed = False

    @abstractmethod
    def initialize(self, options: Dict[str, str]):
        """Configure the backend from its storage source options."""

    @abstractmethod
    def upload(self, local_path: str, remote_path: str):
        """Copy a local file to remote_path, replacing any existing object."""

    @abstractmethod
    def download(self, remote_path: str, local_path: str):
        """Copy remote_path to a local file. Raises NotFoundError if missing."""

    @abstractmethod
    def exists(self, remote_path: str) -> bool:
        """Return True if remote_path exists."""

    @abstractmethod
    def delete(self, remote_path: str):
        """Delete remote_path. Deleting a missing object is not an error."""

    def close(self):
        """Release connections. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        logger.debug(f"Disposing {type(self).__name__} resources.")
        self._release()

    def _release(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
        return False

    @staticmethod
    def _require_local_file(local_path: str):
        if not local_path or not os.path.isfile(local_path):
            raise NotFoundError(f"Local file not found: {local_path}")


class LocalStorage(StorageBackend):
    """
    Handler for storing backups in a local directory.

    Every remote path must resolve inside the configured root. Absolute,
    drive-rooted and '..'-escaping paths are rejected before anything on
    disk is touched.
    """

    storage_type = 'local'

    def __init__(self):
        super().__init__()
        self.base_path = None

    def initialize(self, options: Dict[str, str]):
        path_value = (options or {}).get('path')
        if not path_value or not path_value.strip():
            raise ConfigurationError("Local storage requires a 'path' option")

        self.base_path = Path(os.path.expandvars(os.path.expanduser(path_value))).resolve()

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory {self.base_path}: {e}")

        logger.info(f"Local storage initialized at: {self.base_path}")

    def resolve(self, remote_path: str) -> Path:
        """
        Map a remote path to a location under the storage root.

        Raises:
            ValidationError: If the path is absolute or escapes the root
        """
        if self.base_path is None:
            raise ConfigurationError("Local storage not initialized")

        normalized = normalize_remote_path(remote_path)
        if normalized.startswith('/') or _DRIVE_PATTERN.match(normalized) or os.path.isabs(remote_path):
            raise ValidationError(f"Remote path must be relative: {remote_path}")

        parts = [p for p in normalized.split('/') if p not in ('', '.')]
        if not parts:
            raise ValidationError(f"Remote path does not name a file: {remote_path}")

        target = self.base_path.joinpath(*parts).resolve()
        if target == self.base_path or self.base_path not in target.parents:
            raise ValidationError(f"Remote path escapes storage root: {remote_path}")

        return target

    def upload(self, local_path: str, remote_path: str):
        target = self.resolve(remote_path)
        self._require_local_file(local_path)

        partial = target.with_name(target.name + '.part')
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local_path, partial)
            os.replace(partial, target)
            logger.info(f"Successfully uploaded {os.path.basename(local_path)} to local storage")
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {target}: {e}")
        except OSError as e:
            logger.error(f"Failed to upload {local_path}: {e}")
            raise StorageError(f"Failed to upload {local_path} to local storage: {e}")
        finally:
            if partial.exists():
                try:
                    partial.unlink()
                except OSError:
                    logger.warning(f"Failed to remove partial upload: {partial}")

    def download(self, remote_path: str, local_path: str):
        source = self.resolve(remote_path)
        if not source.is_file():
            raise NotFoundError(f"File not found in local storage: {remote_path}")

        try:
            local_dir = os.path.dirname(os.path.abspath(local_path))
            os.makedirs(local_dir, exist_ok=True)
            shutil.copyfile(source, local_path)
            logger.info(f"Successfully downloaded {posixpath.basename(normalize_remote_path(remote_path))} from local storage")
        except OSError as e:
            logger.error(f"Failed to download {remote_path}: {e}")
            raise StorageError(f"Failed to download {remote_path} from local storage: {e}")

    def exists(self, remote_path: str) -> bool:
        return self.resolve(remote_path).is_file()

    def delete(self, remote_path: str):
        full_path = self.resolve(remote_path)

        if not full_path.exists():
            logger.warning(f"File not found, cannot delete: {remote_path}")
            return

        try:
            full_path.unlink()
            logger.info(f"Successfully deleted {remote_path} from local storage")
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            logger.error(f"Failed to delete {remote_path}: {e}")
            raise StorageError(f"Failed to delete {remote_path} from local storage: {e}")


class S3Storage(StorageBackend):
    """
    Handler for storing backups in AWS S3.

    Options: accessKey, secretKey, bucketName, region (default us-east-1),
    endpointUrl (optional, for S3-compatible services).
    """

    storage_type = 's3'

    def __init__(self):
        super().__init__()
        self.bucket_name = None
        self.region = None
        self.s3_client = None

    def initialize(self, options: Dict[str, str]):
        options = options or {}
        self.bucket_name = options.get('bucketName')
        self.region = options.get('region') or 'us-east-1'

        if not self.bucket_name:
            raise ConfigurationError("S3 storage requires a 'bucketName' option")

        client_kwargs = {'region_name': self.region}
        if options.get('accessKey') and options.get('secretKey'):
            client_kwargs['aws_access_key_id'] = options['accessKey']
            client_kwargs['aws_secret_access_key'] = options['secretKey']
        if options.get('endpointUrl'):
            client_kwargs['endpoint_url'] = options['endpointUrl']

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except (BotoCoreError, ValueError) as e:
            raise ConfigurationError(f"Failed to initialize S3 client: {e}")

        logger.info(f"S3 storage initialized for bucket: {self.bucket_name}")

    @staticmethod
    def _key(remote_path: str) -> str:
        return normalize_remote_path(remote_path).lstrip('/')

    def upload(self, local_path: str, remote_path: str):
        self._require_local_file(local_path)
        s3_key = self._key(remote_path)

        try:
            file_size = os.path.getsize(local_path)

            # Use multipart upload for files larger than 100MB
            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key)
            else:
                self._simple_upload(local_path, s3_key)

            logger.info(f"Uploaded {os.path.basename(local_path)} to s3://{self.bucket_name}/{s3_key}")

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to read {local_path} for upload: {e}")

    def _simple_upload(self, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, s3_key: str):
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def download(self, remote_path: str, local_path: str):
        s3_key = self._key(remote_path)

        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=s3_key)
            os.makedirs(os.path.dirname(os.path.abspath(local_path)), exist_ok=True)
            with open(local_path, 'wb') as f:
                for chunk in response['Body'].iter_chunks(DOWNLOAD_CHUNK_SIZE):
                    f.write(chunk)
            logger.info(f"Downloaded s3://{self.bucket_name}/{s3_key}")

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('NoSuchKey', '404', 'NotFound'):
                raise NotFoundError(f"Object not found in S3: {s3_key}")
            raise StorageError(f"S3 download failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 download failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to write {local_path}: {e}")

    def exists(self, remote_path: str) -> bool:
        s3_key = self._key(remote_path)

        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=s3_key)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('NoSuchKey', '404', 'NotFound'):
                return False
            raise StorageError(f"S3 head failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 head failed: {e}")

    def delete(self, remote_path: str):
        s3_key = self._key(remote_path)

        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=s3_key
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def _release(self):
        if self.s3_client is not None:
            self.s3_client.close()
            self.s3_client = None


class SFTPStorage(StorageBackend):
    """
    Handler for storing backups on a remote host via SSH/SFTP.

    Options: host, port (default 22), username, password or privateKeyPath,
    remotePath (base directory on the server).
    """

    storage_type = 'sftp'

    def __init__(self):
        super().__init__()
        self.host = None
        self.port = 22
        self.username = None
        self.base_path = '.'
        self.ssh_client = None
        self.sftp_client = None

    def initialize(self, options: Dict[str, str]):
        options = options or {}
        self.host = options.get('host')
        self.port = int(options.get('port') or 22)
        self.username = options.get('username')
        self.base_path = (options.get('remotePath') or options.get('path') or '.').replace('\\', '/')

        password = options.get('password')
        private_key_path = options.get('privateKeyPath')

        if not self.host or not self.username:
            raise ConfigurationError("SFTP storage requires 'host' and 'username' options")

        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': 30
        }

        if password:
            connect_kwargs['password'] = password
        elif private_key_path:
            key_path = Path(private_key_path).expanduser()
            if not key_path.exists():
                raise ConfigurationError(f"Private key not found: {private_key_path}")
            connect_kwargs['key_filename'] = str(key_path)
        else:
            raise ConfigurationError("Either password or privateKeyPath must be provided")

        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())
            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()
        except paramiko.AuthenticationException as e:
            self._release()
            raise ConfigurationError(f"SSH authentication failed: {e}")
        except (paramiko.SSHException, OSError) as e:
            self._release()
            raise StorageError(f"Failed to connect to {self.host}: {e}")

        logger.info(f"SFTP storage initialized at {self.username}@{self.host}:{self.base_path}")

    def _remote(self, remote_path: str) -> str:
        return posixpath.join(self.base_path, normalize_remote_path(remote_path).lstrip('/'))

    def _makedirs(self, remote_dir: str):
        if remote_dir in ('', '.', '/'):
            return
        try:
            self.sftp_client.stat(remote_dir)
        except FileNotFoundError:
            self._makedirs(posixpath.dirname(remote_dir))
            self.sftp_client.mkdir(remote_dir)

    def upload(self, local_path: str, remote_path: str):
        self._require_local_file(local_path)
        target = self._remote(remote_path)

        try:
            self._makedirs(posixpath.dirname(target))
            self.sftp_client.put(local_path, target)
            logger.info(f"Uploaded {os.path.basename(local_path)} to sftp://{self.host}/{target}")
        except PermissionError as e:
            raise StorageError(f"Permission denied writing {target}: {e}")
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"SFTP upload failed for {target}: {e}")

    def download(self, remote_path: str, local_path: str):
        source = self._remote(remote_path)

        try:
            os.makedirs(os.path.dirname(os.path.abspath(local_path)), exist_ok=True)
            self.sftp_client.get(source, local_path)
        except FileNotFoundError:
            raise NotFoundError(f"Remote file not found: {source}")
        except PermissionError as e:
            raise StorageError(f"Permission denied accessing remote file {source}: {e}")
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"Failed to download {source}: {e}")

    def exists(self, remote_path: str) -> bool:
        try:
            self.sftp_client.stat(self._remote(remote_path))
            return True
        except FileNotFoundError:
            return False
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"SFTP stat failed for {remote_path}: {e}")

    def delete(self, remote_path: str):
        target = self._remote(remote_path)
        try:
            self.sftp_client.remove(target)
        except FileNotFoundError:
            logger.warning(f"File not found, cannot delete: {target}")
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"SFTP delete failed for {target}: {e}")

    def _release(self):
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except (paramiko.SSHException, OSError) as e:
                logger.warning(f"Error closing SFTP session: {e}")
            self.sftp_client = None

        if self.ssh_client:
            try:
                self.ssh_client.close()
            except (paramiko.SSHException, OSError) as e:
                logger.warning(f"Error closing SSH connection: {e}")
            self.ssh_client = None


STORAGE_BACKENDS: Dict[str, Type[StorageBackend]] = {
    'local': LocalStorage,
    's3': S3Storage,
    'sftp': SFTPStorage,
}


def create_storage(storage_type: str, options: Optional[Dict[str, str]] = None) -> StorageBackend:
    """
    Factory function to create and initialize a storage backend.

    Args:
        storage_type: Registered backend name ('local', 's3', 'sftp'), case-insensitive
        options: Backend options from the storage source configuration

    Returns:
        Initialized StorageBackend

    Raises:
        ConfigurationError: If storage_type is unknown or options are invalid
    """
    backend_class = STORAGE_BACKENDS.get((storage_type or '').lower())
    if backend_class is None:
        raise ConfigurationError(f"Unsupported storage type: {storage_type}")

    storage = backend_class()
    storage.initialize(options or {})
    return storage
