import logging
import os
import subprocess

from dbclone import config
from dbclone.services.exceptions import (
    PermissionDeniedError,
    StorageError,
    StorageNotFoundError,
    TransientIOError,
)

logger = logging.getLogger(__name__)


def classify_process_error(action: str, e: subprocess.CalledProcessError) -> StorageError:
    """외부 명령 실패를 stderr 내용으로 분류합니다."""
    stderr = (e.stderr or "").strip()
    lowered = stderr.lower()
    message = f"{action} failed: {stderr or e}"
    if "permission denied" in lowered or "not permitted" in lowered:
        return PermissionDeniedError(message)
    if "no such file" in lowered or "not found" in lowered:
        return StorageNotFoundError(message)
    return TransientIOError(message)


class GuestMountManager:
    """
    libguestfs(guestmount)로 differencing 디스크를 호스트 디렉터리에 마운트합니다.

    access path는 mount_root 아래 디스크 파일 이름(확장자 제외)으로 정해지므로,
    같은 디스크를 다시 마운트해도 같은 경로가 나옵니다.
    """

    def __init__(self, mount_root: str = None, device: str = "/dev/sda1", use_sudo: bool = True):
        self.mount_root = mount_root or config.MOUNT_ROOT
        self.device = device
        self.use_sudo = use_sudo

    def _command(self, *args):
        return (['sudo'] if self.use_sudo else []) + list(args)

    def _run(self, action: str, command):
        try:
            subprocess.run(command, check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as e:
            raise classify_process_error(action, e) from e
        except FileNotFoundError as e:
            raise StorageError(f"{command[0]} command not found. Install libguestfs-tools.") from e

    def access_path_for(self, diff_location: str) -> str:
        stem = os.path.splitext(os.path.basename(diff_location))[0]
        return os.path.join(self.mount_root, stem)

    def is_mounted(self, access_path: str) -> bool:
        return os.path.ismount(access_path)

    def mount(self, diff_location: str) -> str:
        access_path = self.access_path_for(diff_location)
        if self.is_mounted(access_path):
            logger.debug("Already mounted, skipping: %s", access_path)
            return access_path
        if not os.path.exists(diff_location):
            raise StorageNotFoundError(f"Differencing disk not found: {diff_location}")

        self._run("mkdir", self._command('mkdir', '-p', access_path))
        self._run("guestmount", self._command(
            'guestmount', '-a', diff_location, '-m', self.device, '--rw', access_path
        ))
        logger.info("Mounted %s at %s", diff_location, access_path)
        return access_path

    def unmount(self, access_path: str) -> None:
        if not self.is_mounted(access_path):
            logger.debug("Not mounted, skipping unmount: %s", access_path)
            return
        self._run("guestunmount", self._command('guestunmount', access_path))
        logger.info("Unmounted %s", access_path)
