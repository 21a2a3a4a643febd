# tests/storage/test_libvirt_binder.py
import libvirt
import pytest
from unittest.mock import MagicMock, patch

from dbclone.storage.libvirt_binder import LibvirtStorageBinder, classify_libvirt_error
from dbclone.storage.mounts import GuestMountManager
from dbclone.storage.sqlserver_driver import SqlServerDriver
from dbclone.services.exceptions import (
    AlreadyExistsError,
    PermissionDeniedError,
    StorageNotFoundError,
    TransientIOError,
)

# ===================================================================
#  테스트를 위한 가짜 객체 및 Fixture 설정
# ===================================================================

def make_libvirt_error(code, message="libvirt failure"):
    """지정한 에러 코드를 돌려주는 libvirtError를 만듭니다."""
    error = libvirt.libvirtError(message)
    error.get_error_code = lambda: code
    return error


class FakeVolume:
    """libvirt의 StorageVol 객체를 흉내 내는 가짜 클래스."""
    def __init__(self, path, capacity=1024):
        self._path = path
        self._capacity = capacity
        self.deleted = False

    def path(self): return self._path
    def info(self): return [0, self._capacity, 0]
    def delete(self, flags): self.deleted = True; return 0


@pytest.fixture
def mock_conn() -> MagicMock:
    """libvirt.open을 모킹하여 실제 하이퍼바이저 연결을 방지합니다."""
    with patch("dbclone.storage.libvirt_binder.libvirt.open") as mock_open:
        conn = MagicMock()
        mock_open.return_value = conn
        yield conn


@pytest.fixture
def volumes(mock_conn):
    """경로 -> FakeVolume. storageVolLookupByPath가 이 딕셔너리를 봅니다."""
    store = {}

    def lookup(path):
        if path not in store:
            raise make_libvirt_error(libvirt.VIR_ERR_NO_STORAGE_VOL, f"no volume {path}")
        return store[path]

    mock_conn.storageVolLookupByPath.side_effect = lookup
    return store


@pytest.fixture
def binder(mock_conn, volumes) -> LibvirtStorageBinder:
    return LibvirtStorageBinder(uri="qemu:///system", pool_name="dbclone",
                                mounts=MagicMock(spec=GuestMountManager),
                                engine_driver=MagicMock(spec=SqlServerDriver))

# ===================================================================
#  allocate_diff 테스트 스위트
# ===================================================================
class TestAllocateDiff:
    def test_allocate_creates_overlay_volume(self, binder, mock_conn, volumes):
        """base 볼륨 용량으로 qcow2 overlay 볼륨을 만드는지 테스트합니다."""
        # === Arrange ===
        volumes["/base/img1.qcow2"] = FakeVolume("/base/img1.qcow2", capacity=4096)
        pool = mock_conn.storagePoolLookupByName.return_value
        pool.createXML.return_value = FakeVolume("/diffs/c-1.qcow2")

        # === Act ===
        location = binder.allocate_diff("/base/img1.qcow2", "/diffs/c-1.qcow2")

        # === Assert ===
        assert location == "/diffs/c-1.qcow2"
        mock_conn.storagePoolLookupByName.assert_called_once_with("dbclone")
        xml_config = pool.createXML.call_args[0][0]
        assert "<capacity unit='bytes'>4096</capacity>" in xml_config
        assert "<path>/base/img1.qcow2</path>" in xml_config

    def test_allocate_reuses_existing_volume(self, binder, mock_conn, volumes):
        """이미 있는 differencing 디스크는 새로 만들지 않습니다."""
        volumes["/diffs/c-1.qcow2"] = FakeVolume("/diffs/c-1.qcow2")

        assert binder.allocate_diff("/base/img1.qcow2", "/diffs/c-1.qcow2") == "/diffs/c-1.qcow2"
        mock_conn.storagePoolLookupByName.return_value.createXML.assert_not_called()

    def test_allocate_missing_base(self, binder, mock_conn):
        with pytest.raises(StorageNotFoundError):
            binder.allocate_diff("/no/such/base.qcow2", "/diffs/c-1.qcow2")

    def test_allocate_race_treated_as_success(self, binder, mock_conn, volumes):
        """동시에 같은 볼륨이 만들어져 VOL_EXIST가 나면 기존 볼륨을 돌려줍니다."""
        volumes["/base/img1.qcow2"] = FakeVolume("/base/img1.qcow2")
        pool = mock_conn.storagePoolLookupByName.return_value

        def create_raced(xml, flags):
            volumes["/diffs/c-1.qcow2"] = FakeVolume("/diffs/c-1.qcow2")
            raise make_libvirt_error(libvirt.VIR_ERR_STORAGE_VOL_EXIST)

        pool.createXML.side_effect = create_raced

        assert binder.allocate_diff("/base/img1.qcow2", "/diffs/c-1.qcow2") == "/diffs/c-1.qcow2"

    def test_allocate_permission_denied(self, binder, mock_conn, volumes):
        volumes["/base/img1.qcow2"] = FakeVolume("/base/img1.qcow2")
        pool = mock_conn.storagePoolLookupByName.return_value
        pool.createXML.side_effect = make_libvirt_error(libvirt.VIR_ERR_ACCESS_DENIED)

        with pytest.raises(PermissionDeniedError):
            binder.allocate_diff("/base/img1.qcow2", "/diffs/c-1.qcow2")

# ===================================================================
#  delete / 상태 조회 테스트 스위트
# ===================================================================
class TestDeleteAndInspect:
    def test_delete_existing_volume(self, binder, volumes):
        volume = FakeVolume("/diffs/c-1.qcow2")
        volumes["/diffs/c-1.qcow2"] = volume

        binder.delete_diff("/diffs/c-1.qcow2")

        assert volume.deleted

    def test_delete_missing_volume_is_noop(self, binder):
        """이미 없는 디스크를 지우는 것은 성공으로 취급합니다."""
        binder.delete_diff("/diffs/c-9.qcow2")

    def test_diff_exists(self, binder, volumes):
        volumes["/diffs/c-1.qcow2"] = FakeVolume("/diffs/c-1.qcow2")

        assert binder.diff_exists("/diffs/c-1.qcow2") is True
        assert binder.diff_exists("/diffs/c-2.qcow2") is False

    def test_list_diff_locations(self, binder, mock_conn):
        pool = mock_conn.storagePoolLookupByName.return_value
        pool.listAllVolumes.return_value = [FakeVolume("/diffs/c-1.qcow2"), FakeVolume("/diffs/c-2.qcow2")]

        assert binder.list_diff_locations() == ["/diffs/c-1.qcow2", "/diffs/c-2.qcow2"]
        pool.refresh.assert_called_once_with(0)

    def test_delegates_mount_and_attach(self, binder):
        binder.mounts.mount.return_value = "/mnt/dbclone/c-1"

        assert binder.mount("/diffs/c-1.qcow2") == "/mnt/dbclone/c-1"
        binder.attach_database("/mnt/dbclone/c-1", "SQL01", "Sales")
        binder.detach_database("SQL01", "Sales")

        binder.engine_driver.attach_database.assert_called_once_with("/mnt/dbclone/c-1", "SQL01", "Sales")
        binder.engine_driver.detach_database.assert_called_once_with("SQL01", "Sales")

    def test_access_path_for_uses_mount_layout(self, binder):
        binder.mounts.access_path_for.return_value = "/mnt/dbclone/c-1"

        assert binder.access_path_for("/diffs/c-1.qcow2") == "/mnt/dbclone/c-1"
        binder.mounts.access_path_for.assert_called_once_with("/diffs/c-1.qcow2")


def test_connection_failure_raises_connection_error():
    with patch("dbclone.storage.libvirt_binder.libvirt.open") as mock_open:
        mock_open.side_effect = make_libvirt_error(libvirt.VIR_ERR_NO_CONNECT)
        with pytest.raises(ConnectionError):
            LibvirtStorageBinder(uri="qemu:///system", mounts=MagicMock(), engine_driver=MagicMock())


@pytest.mark.parametrize("code, expected", [
    (libvirt.VIR_ERR_NO_STORAGE_VOL, StorageNotFoundError),
    (libvirt.VIR_ERR_STORAGE_VOL_EXIST, AlreadyExistsError),
    (libvirt.VIR_ERR_AUTH_FAILED, PermissionDeniedError),
    (libvirt.VIR_ERR_INTERNAL_ERROR, TransientIOError),
])
def test_classify_libvirt_error(code, expected):
    assert isinstance(classify_libvirt_error("op", make_libvirt_error(code)), expected)
