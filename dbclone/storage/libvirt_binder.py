import logging
import os
from typing import List

import libvirt

from dbclone import config
from dbclone.storage.interfaces import IStorageBinder
from dbclone.storage.mounts import GuestMountManager
from dbclone.storage.sqlserver_driver import SqlServerDriver
from dbclone.utils.volume_xml_generator import generate_volume_xml
from dbclone.services.exceptions import (
    AlreadyExistsError,
    PermissionDeniedError,
    StorageError,
    StorageNotFoundError,
    TransientIOError,
)

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {libvirt.VIR_ERR_NO_STORAGE_VOL, libvirt.VIR_ERR_NO_STORAGE_POOL}
_DENIED_CODES = {libvirt.VIR_ERR_AUTH_FAILED, libvirt.VIR_ERR_OPERATION_DENIED, libvirt.VIR_ERR_ACCESS_DENIED}


def classify_libvirt_error(action: str, e: libvirt.libvirtError) -> StorageError:
    code = e.get_error_code()
    message = f"{action} failed: {e}"
    if code in _NOT_FOUND_CODES:
        return StorageNotFoundError(message)
    if code == libvirt.VIR_ERR_STORAGE_VOL_EXIST:
        return AlreadyExistsError(message)
    if code in _DENIED_CODES:
        return PermissionDeniedError(message)
    return TransientIOError(message)


def _is_missing_volume(e: libvirt.libvirtError) -> bool:
    return e.get_error_code() == libvirt.VIR_ERR_NO_STORAGE_VOL


class LibvirtStorageBinder(IStorageBinder):
    """
    libvirt 스토리지 풀의 qcow2 overlay 볼륨을 differencing 디스크로 사용하는 Storage Binder.

    마운트는 GuestMountManager에, 데이터베이스 attach/detach는 SqlServerDriver에 맡깁니다.
    """

    def __init__(self, uri: str = None, pool_name: str = None, mounts: GuestMountManager = None,
                 engine_driver: SqlServerDriver = None):
        self.pool_name = pool_name or config.STORAGE_POOL
        self.mounts = mounts or GuestMountManager()
        self.engine_driver = engine_driver or SqlServerDriver()
        try:
            self.conn = libvirt.open(uri or config.LIBVIRT_URI)
        except libvirt.libvirtError as e:
            logger.error("Failed to open libvirt connection: %s", e)
            raise ConnectionError("Failed to open connection to the hypervisor.") from e

    def _pool(self):
        try:
            return self.conn.storagePoolLookupByName(self.pool_name)
        except libvirt.libvirtError as e:
            raise classify_libvirt_error(f"lookup of storage pool '{self.pool_name}'", e) from e

    def _lookup_volume(self, path: str):
        """경로로 볼륨을 찾습니다. 없으면 None."""
        try:
            return self.conn.storageVolLookupByPath(path)
        except libvirt.libvirtError as e:
            if _is_missing_volume(e):
                return None
            raise classify_libvirt_error(f"lookup of volume '{path}'", e) from e

    def _base_capacity(self, base_location: str) -> int:
        volume = self._lookup_volume(base_location)
        if volume is not None:
            return volume.info()[1]
        if os.path.exists(base_location):
            return os.path.getsize(base_location)
        raise StorageNotFoundError(f"Base image not found: {base_location}")

    # --- differencing disk ---
    def allocate_diff(self, base_location: str, diff_location: str) -> str:
        existing = self._lookup_volume(diff_location)
        if existing is not None:
            logger.debug("Differencing disk already exists, reusing: %s", diff_location)
            return existing.path()

        capacity = self._base_capacity(base_location)
        xml_config = generate_volume_xml(diff_location, base_location, capacity)
        pool = self._pool()
        try:
            volume = pool.createXML(xml_config, 0)
        except libvirt.libvirtError as e:
            if e.get_error_code() == libvirt.VIR_ERR_STORAGE_VOL_EXIST:
                # 동시에 같은 볼륨을 만든 경우: 이미 있으면 성공으로 봅니다.
                existing = self._lookup_volume(diff_location)
                if existing is not None:
                    return existing.path()
            raise classify_libvirt_error(f"allocation of '{diff_location}'", e) from e
        logger.info("Allocated differencing disk %s (base %s)", diff_location, base_location)
        return volume.path()

    def delete_diff(self, diff_location: str) -> None:
        volume = self._lookup_volume(diff_location)
        if volume is None:
            logger.debug("Differencing disk not found, skipping delete: %s", diff_location)
            return
        try:
            volume.delete(0)
        except libvirt.libvirtError as e:
            if _is_missing_volume(e):
                return
            raise classify_libvirt_error(f"deletion of '{diff_location}'", e) from e
        logger.info("Deleted differencing disk %s", diff_location)

    def diff_exists(self, diff_location: str) -> bool:
        return self._lookup_volume(diff_location) is not None

    def list_diff_locations(self) -> List[str]:
        pool = self._pool()
        try:
            pool.refresh(0)
            return [volume.path() for volume in pool.listAllVolumes(0)]
        except libvirt.libvirtError as e:
            raise classify_libvirt_error(f"listing of pool '{self.pool_name}'", e) from e

    # --- mount ---
    def mount(self, diff_location: str) -> str:
        return self.mounts.mount(diff_location)

    def access_path_for(self, diff_location: str) -> str:
        return self.mounts.access_path_for(diff_location)

    def unmount(self, access_path: str) -> None:
        self.mounts.unmount(access_path)

    def is_mounted(self, access_path: str) -> bool:
        return self.mounts.is_mounted(access_path)

    # --- database engine ---
    def attach_database(self, access_path: str, sql_instance: str, database_name: str) -> None:
        self.engine_driver.attach_database(access_path, sql_instance, database_name)

    def detach_database(self, sql_instance: str, database_name: str) -> None:
        self.engine_driver.detach_database(sql_instance, database_name)

    def is_attached(self, sql_instance: str, database_name: str) -> bool:
        return self.engine_driver.is_attached(sql_instance, database_name)

    def close(self):
        self.engine_driver.dispose()
        if self.conn:
            try:
                self.conn.close()
            except libvirt.libvirtError as e:
                logger.debug("libvirt connection already closed: %s", e)
            self.conn = None
