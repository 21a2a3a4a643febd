# tests/conftest.py
import os
import threading
from datetime import datetime
from itertools import count

import pytest
from sqlalchemy.exc import IntegrityError

from dbclone.database import models
from dbclone.database.models import CloneStatus
from dbclone.repositories.interfaces import ICloneRepository, IImageRepository
from dbclone.services.clone_service import CloneService
from dbclone.services.image_service import ImageService
from dbclone.services.operation_locks import OperationLockTable
from dbclone.services.reference_tracker import ReferenceTracker
from dbclone.services.retry import BinderCaller, RetryPolicy
from dbclone.storage.interfaces import IStorageBinder
from dbclone.services.exceptions import StorageNotFoundError

# ===================================================================
#  테스트를 위한 가짜 객체
# ===================================================================

class InMemoryImageRepository(IImageRepository):
    """IImageRepository를 메모리로 흉내 내는 가짜 클래스."""
    def __init__(self):
        self.images = {}
        self._ids = count(1)

    def create(self, image_model):
        image_model.id = next(self._ids)
        image_model.created_at = datetime.now()
        self.images[image_model.id] = image_model
        return image_model

    def _active(self):
        return [image for image in self.images.values() if image.retired_at is None]

    def find_by_id(self, image_id):
        return next((image for image in self._active() if image.id == image_id), None)

    def find_by_location(self, location):
        return next((image for image in self._active() if image.location == location), None)

    def find_by_name(self, name):
        return next((image for image in self._active() if image.name == name), None)

    def list_active(self):
        return self._active()

    def list_retired_ids(self):
        return [image.id for image in self.images.values() if image.retired_at is not None]

    def mark_retired(self, image):
        image.retired_at = datetime.now()
        return image


class InMemoryCloneRepository(ICloneRepository):
    """ICloneRepository를 메모리로 흉내 내는 가짜 클래스. attach 지점 유니크 인덱스도 흉내 냅니다."""
    def __init__(self, images=None):
        self.clones = {}
        self.images = images if images is not None else {}
        self._ids = count(1)
        self._lock = threading.Lock()

    def create(self, clone_model):
        with self._lock:
            if self._live_owner(clone_model.host_name, clone_model.sql_instance, clone_model.database_name):
                raise IntegrityError("INSERT INTO clones", {}, Exception("UNIQUE constraint failed"))
            clone_model.id = next(self._ids)
            clone_model.created_at = datetime.now()
            clone_model.last_activity_at = datetime.now()
            clone_model.image = self.images.get(clone_model.image_id)
            self.clones[clone_model.id] = clone_model
            return clone_model

    def _live_owner(self, host_name, sql_instance, database_name):
        return next((c for c in self.clones.values()
                     if (c.host_name, c.sql_instance, c.database_name) == (host_name, sql_instance, database_name)
                     and c.status != CloneStatus.REMOVED), None)

    def find_by_id(self, clone_id):
        return self.clones.get(clone_id)

    def reload(self, clone_id):
        return self.clones.get(clone_id)

    def find_live_by_attach_point(self, host_name, sql_instance, database_name):
        with self._lock:
            return self._live_owner(host_name, sql_instance, database_name)

    def list(self, host_name=None, sql_instance=None, database_name=None, image_id=None, status=None):
        filters = {"host_name": host_name, "sql_instance": sql_instance, "database_name": database_name,
                   "image_id": image_id, "status": status}
        return [c for c in sorted(self.clones.values(), key=lambda c: c.id)
                if all(value is None or getattr(c, key) == value for key, value in filters.items())]

    def list_stale(self, statuses, older_than):
        return [c for c in self.list() if c.status in statuses and c.last_activity_at < older_than]

    def list_all_locations(self):
        return [c.clone_location for c in self.clones.values()
                if c.status != CloneStatus.REMOVED and c.clone_location]

    def count_live_by_image(self):
        counts = {}
        for c in self.clones.values():
            if c.status in CloneStatus.LIVE:
                counts[c.image_id] = counts.get(c.image_id, 0) + 1
        return counts

    def count_unremoved_by_image_id(self, image_id):
        return sum(1 for c in self.clones.values() if c.image_id == image_id and c.status != CloneStatus.REMOVED)

    def update(self, clone, **fields):
        with self._lock:
            for key, value in fields.items():
                setattr(clone, key, value)
            clone.last_activity_at = datetime.now()
            return clone


class FakeStorageBinder(IStorageBinder):
    """
    differencing 디스크/마운트/DB attach를 메모리로 흉내 내는 Storage Binder.

    fail(step, *errors)로 특정 단계가 순서대로 예외를 던지게 할 수 있고,
    block(step)으로 해당 단계가 풀릴 때까지 멈추게 할 수 있습니다.
    """
    def __init__(self, mount_root="/mnt/dbclone"):
        self.mount_root = mount_root
        self.diffs = {}
        self.mounts = {}
        self.attached = {}
        self.calls = []
        self.allocations = 0
        self._failures = {}
        self._gates = {}
        self.entered = {}
        self._lock = threading.Lock()

    def fail(self, step, *errors):
        self._failures.setdefault(step, []).extend(errors)

    def block(self, step):
        gate, entered = threading.Event(), threading.Event()
        self._gates[step] = gate
        self.entered[step] = entered
        return gate

    def _enter(self, step, *args):
        with self._lock:
            self.calls.append((step,) + args)
            queue = self._failures.get(step)
            error = queue.pop(0) if queue else None
        entered, gate = self.entered.get(step), self._gates.get(step)
        if entered is not None:
            entered.set()
        if gate is not None:
            gate.wait(5)
        if error is not None:
            raise error

    def steps(self):
        return [call[0] for call in self.calls]

    def allocate_diff(self, base_location, diff_location):
        self._enter("allocate_diff", base_location, diff_location)
        with self._lock:
            if diff_location not in self.diffs:
                self.diffs[diff_location] = base_location
                self.allocations += 1
        return diff_location

    def access_path_for(self, diff_location):
        return os.path.join(self.mount_root, os.path.splitext(os.path.basename(diff_location))[0])

    def mount(self, diff_location):
        self._enter("mount", diff_location)
        if diff_location not in self.diffs:
            raise StorageNotFoundError(f"Differencing disk not found: {diff_location}")
        access_path = self.access_path_for(diff_location)
        self.mounts[access_path] = diff_location
        return access_path

    def attach_database(self, access_path, sql_instance, database_name):
        self._enter("attach_database", access_path, sql_instance, database_name)
        if access_path not in self.mounts:
            raise StorageNotFoundError(f"Access path not mounted: {access_path}")
        self.attached[(sql_instance, database_name)] = access_path

    def detach_database(self, sql_instance, database_name):
        self._enter("detach_database", sql_instance, database_name)
        self.attached.pop((sql_instance, database_name), None)

    def unmount(self, access_path):
        self._enter("unmount", access_path)
        self.mounts.pop(access_path, None)

    def delete_diff(self, diff_location):
        self._enter("delete_diff", diff_location)
        self.diffs.pop(diff_location, None)

    def diff_exists(self, diff_location):
        return diff_location in self.diffs

    def is_mounted(self, access_path):
        return access_path in self.mounts

    def is_attached(self, sql_instance, database_name):
        return (sql_instance, database_name) in self.attached

    def list_diff_locations(self):
        return list(self.diffs)


# ===================================================================
#  Fixture 설정
# ===================================================================

@pytest.fixture
def image_repo() -> InMemoryImageRepository:
    return InMemoryImageRepository()


@pytest.fixture
def clone_repo(image_repo) -> InMemoryCloneRepository:
    return InMemoryCloneRepository(image_repo.images)


@pytest.fixture
def binder() -> FakeStorageBinder:
    return FakeStorageBinder()


@pytest.fixture
def tracker() -> ReferenceTracker:
    return ReferenceTracker()


@pytest.fixture
def caller():
    """재시도 대기 없이, 짧은 데드라인으로 동작하는 BinderCaller."""
    binder_caller = BinderCaller(policy=RetryPolicy(max_attempts=3, backoff_ms=10, timeout_s=2.0),
                                 max_workers=8, sleep=lambda seconds: None)
    yield binder_caller
    binder_caller.shutdown()


@pytest.fixture
def image_service(image_repo, clone_repo, tracker) -> ImageService:
    return ImageService(image_repo, clone_repo, tracker)


@pytest.fixture
def clone_service(clone_repo, image_service, binder, tracker, caller) -> CloneService:
    """테스트에 사용될 CloneService 인스턴스를 생성하고, 의존성을 주입합니다."""
    return CloneService(clone_repo, image_service, binder, tracker, OperationLockTable(), caller,
                        diff_dir="/diffs", stale_after_s=0)


@pytest.fixture
def image(image_service):
    """'/base/img1.vhdx'에 등록된 이미지 img-1."""
    registered = image_service.register_image(
        name="img-1",
        location="/base/img1.vhdx",
        source_database_name="Sales",
        source_database_timestamp=datetime(2026, 10, 1, 2, 0, 0),
        size_bytes=10 * 1024 ** 3,
    )
    return image_service.get_image(registered["id"])
