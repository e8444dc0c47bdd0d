import logging
import os
from pathlib import Path

import paramiko

from pve_provisioner.errors import LocalIOError, TransportError


logger = logging.getLogger(__name__)


class SFTPImageCopier:
    """Side channel for pushing disk images onto the hypervisor host."""

    def __init__(
        self,
        host: str,
        user: str = "root",
        *,
        port: int = 22,
        key_path: str | None = None,
    ):
        self.host = host
        self.user = user
        self.port = port
        self.key_path = os.path.expanduser(key_path) if key_path else None

    def copy(self, local_path: str, remote_path: str) -> None:
        if not Path(local_path).is_file():
            raise LocalIOError(f"image not found or unreadable: {local_path}")
        target = f"{self.user}@{self.host}:{remote_path}"
        logger.info("transferring %s to %s", local_path, target)

        ssh = paramiko.SSHClient()
        ssh.load_system_host_keys()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            ssh.connect(
                hostname=self.host,
                port=self.port,
                username=self.user,
                key_filename=self.key_path,
            )
            sftp = ssh.open_sftp()
            try:
                sftp.put(local_path, remote_path)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as exc:
            raise TransportError(
                method="SFTP",
                url=target,
                attempts=1,
                error_type=exc.__class__.__name__,
                detail=str(exc),
            ) from exc
        finally:
            ssh.close()
        logger.info("image transferred successfully")
