import logging
import os
from contextlib import ExitStack
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from dbclone import config
from dbclone.database import models
from dbclone.database.models import CloneStatus, CloneStep
from dbclone.repositories.interfaces import ICloneRepository
from dbclone.services.clone_registry import CloneRegistry, clone_to_dict
from dbclone.services.image_service import ImageService
from dbclone.services.operation_locks import OperationLockTable
from dbclone.services.reference_tracker import ReferenceTracker
from dbclone.services.retry import BinderCaller, Deadline
from dbclone.storage.interfaces import IStorageBinder
from dbclone.services.exceptions import (
    DuplicateAttachPointError,
    InconsistentStateError,
    InvalidTransitionError,
    OperationInProgressError,
    OperationTimeoutError,
    StorageError,
)

logger = logging.getLogger(__name__)

# 보상(undo) 항목: (단계 이름, 호출할 함수, 인자)
UndoAction = Tuple[str, Callable[..., Any], tuple]


class CloneService:
    """
    클론 생명주기 orchestrator.

    Create/Remove/Reconcile 모두 같은 규칙을 따릅니다.
      - 외부 작업 전에 레지스트리에 의도를 먼저 기록합니다. (Provisioning/Disabling)
      - Storage Binder 단계가 끝날 때마다 last_step을 남깁니다.
      - 실패하면 완료된 단계를 역순으로 되돌리고 Failed로 표시합니다.
      - 데드라인을 넘기면 상태를 그대로 두고 Reconcile에 맡깁니다.
    """

    def __init__(self, clone_repo: ICloneRepository, image_service: ImageService, binder: IStorageBinder,
                 tracker: ReferenceTracker, locks: OperationLockTable, caller: BinderCaller,
                 diff_dir: str = None, stale_after_s: int = None):
        """
        CloneService를 초기화합니다.

        Args:
            clone_repo: 클론 레지스트리의 저장소.
            image_service: 이미지 카탈로그. (이미지 조회 및 retire된 이미지 목록)
            binder: differencing 디스크/마운트/DB attach를 수행하는 Storage Binder.
            tracker: 프로세스 전체에서 공유하는 이미지 참조 카운트.
            locks: 프로세스 전체에서 공유하는 클론/attach 지점 잠금 테이블.
            caller: 데드라인과 재시도를 적용해 Storage Binder를 호출하는 객체.
            diff_dir: differencing 디스크를 둘 디렉터리.
            stale_after_s: Reconcile이 멈춘 작업으로 판단하는 무활동 시간(초).
        """
        self.registry = CloneRegistry(clone_repo)
        self.image_service = image_service
        self.binder = binder
        self.tracker = tracker
        self.locks = locks
        self.caller = caller
        self.diff_dir = diff_dir or config.DIFF_DIR
        self.stale_after_s = config.RECONCILE_STALE_AFTER_S if stale_after_s is None else stale_after_s

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------
    def create_clone(self, image_id: int, host_name: str, sql_instance: str, database_name: str) -> Dict[str, Any]:
        """
        이미지로부터 새 클론을 만들어 SQL 인스턴스에 attach 합니다.

        Args:
            image_id: 클론의 base가 될 이미지 ID.
            host_name: 클론을 붙일 호스트.
            sql_instance: 데이터베이스를 attach 할 SQL 인스턴스.
            database_name: attach 할 데이터베이스 이름.

        Returns:
            Enabled 상태가 된 클론 정보 딕셔너리.

        Raises:
            ImageNotFoundError: 이미지가 없거나 retire되었을 때.
            DuplicateAttachPointError: 같은 attach 지점을 다른 클론이 쓰고 있을 때.
            OperationInProgressError: 같은 attach 지점에 다른 Create가 진행 중일 때.
            OperationTimeoutError: 데드라인을 넘겼을 때. 클론은 Provisioning으로 남습니다.
            StorageError: Storage Binder 단계가 실패했을 때. 클론은 Failed가 됩니다.
        """
        for label, value in (("host_name", host_name), ("sql_instance", sql_instance), ("database_name", database_name)):
            if not value or not str(value).strip():
                raise ValueError(f"{label} is required.")

        image = self.image_service.get_image(image_id)
        attach_key = ("attach", host_name, sql_instance, database_name)

        with ExitStack() as stack:
            stack.enter_context(self.locks.hold(attach_key))
            if self.registry.find_attach_point_owner(host_name, sql_instance, database_name):
                raise DuplicateAttachPointError(
                    f"Attach point {host_name}/{sql_instance}/{database_name} is already in use."
                )

            with self.tracker.registry_write():
                self.tracker.acquire(image.id)
                try:
                    clone = self.registry.insert_provisioning(image.id, host_name, sql_instance, database_name)
                except Exception:
                    self.tracker.release(image.id)
                    raise
            stack.enter_context(self.locks.hold(("clone", clone.id)))
            logger.info("Clone %s provisioning from image %s on %s/%s/%s",
                        clone.id, image.id, host_name, sql_instance, database_name)

            clone = self.registry.record(clone, clone_location=self.diff_location_for(clone.id, image.location))
            clone = self._drive_create(clone, image, self.caller.deadline())

        return clone_to_dict(clone)

    def diff_location_for(self, clone_id: int, image_location: str) -> str:
        """클론 ID로부터 differencing 디스크 위치를 정합니다. (예: /diffs/c-1.vhdx)"""
        extension = os.path.splitext(image_location)[1]
        return os.path.join(self.diff_dir, f"c-{clone_id}{extension}")

    def _drive_create(self, clone: models.Clone, image: models.Image, deadline: Deadline) -> models.Clone:
        """
        allocate -> mount -> attach 순서로 진행합니다. last_step 이후 단계부터 시작하므로
        Reconcile이 멈춘 Provisioning 클론을 이어서 진행할 때도 같은 함수를 씁니다.
        """
        done = self._completed_steps(clone.last_step)
        undo: List[UndoAction] = []
        if clone.clone_location is None:
            clone = self.registry.record(clone, clone_location=self.diff_location_for(clone.id, image.location))

        try:
            # 되돌리기는 호출 전에 쌓습니다. 실패한 호출이 일부만 만들고 끝났을 수도 있습니다.
            undo.append(("delete_diff", self.binder.delete_diff, (clone.clone_location,)))
            if CloneStep.ALLOCATED not in done:
                location = self.caller.call("allocate_diff", self.binder.allocate_diff,
                                            image.location, clone.clone_location, deadline=deadline)
                clone = self.registry.record_step(clone, CloneStep.ALLOCATED, clone_location=location)

            undo.append(("unmount", self.binder.unmount, (self._access_path_of(clone),)))
            if CloneStep.MOUNTED not in done or not clone.access_path:
                access_path = self.caller.call("mount", self.binder.mount, clone.clone_location, deadline=deadline)
                clone = self.registry.record_step(clone, CloneStep.MOUNTED, access_path=access_path)

            if CloneStep.ATTACHED in done:
                undo.append(("detach_database", self.binder.detach_database, (clone.sql_instance, clone.database_name)))
            else:
                self.caller.call("attach_database", self.binder.attach_database,
                                 clone.access_path, clone.sql_instance, clone.database_name, deadline=deadline)
                undo.append(("detach_database", self.binder.detach_database, (clone.sql_instance, clone.database_name)))
                clone = self.registry.record_step(clone, CloneStep.ATTACHED)

        except OperationTimeoutError:
            logger.warning("Clone %s create timed out at step after '%s'; left in %s for reconcile",
                           clone.id, clone.last_step, clone.status)
            raise
        except Exception as e:
            logger.error("Clone %s creation failed: %s. Starting rollback...", clone.id, e)
            compensation_errors = self._compensate(clone, undo)
            self._mark_failed(clone, e, compensation_errors, release=True)
            raise

        clone = self.registry.transition(clone, CloneStatus.ENABLED, last_error=None)
        logger.info("Clone %s enabled at %s (%s/%s)", clone.id, clone.access_path, clone.sql_instance, clone.database_name)
        return clone

    def _compensate(self, clone: models.Clone, undo: List[UndoAction]) -> List[str]:
        """
        완료된 단계를 역순으로 되돌립니다. 되돌리기 실패는 로그만 남기고
        원래 오류를 가리지 않도록 메시지 목록으로만 돌려줍니다.
        """
        errors = []
        deadline = self.caller.deadline()
        for step, func, args in reversed(undo):
            try:
                self.caller.call(step, func, *args, deadline=deadline)
            except Exception as e:
                logger.warning("Rollback Warning: clone %s %s failed: %s", clone.id, step, e)
                errors.append(f"{step}: {e}")
        if not errors:
            try:
                self.registry.record_step(clone, None)
            except Exception as e:
                logger.warning("Rollback Warning: could not reset last_step of clone %s: %s", clone.id, e)
        return errors

    def _mark_failed(self, clone: models.Clone, error: Exception, compensation_errors: List[str], release: bool):
        message = str(error) or type(error).__name__
        if compensation_errors:
            message += " | cleanup failed: " + "; ".join(compensation_errors)
        with self.tracker.registry_write():
            try:
                self.registry.transition(clone, CloneStatus.FAILED, last_error=message)
            except Exception as e:
                # 행이 Provisioning/Disabling으로 남아 있으므로 참조도 그대로 둡니다.
                logger.error("Could not mark clone %s as Failed: %s", clone.id, e)
                return
            if release:
                self.tracker.release(clone.image_id)

    @staticmethod
    def _completed_steps(last_step: Optional[str]) -> Tuple[str, ...]:
        if last_step is None:
            return ()
        return CloneStep.ORDER[:CloneStep.ORDER.index(last_step) + 1]

    # ------------------------------------------------------------------
    # Remove
    # ------------------------------------------------------------------
    def remove_clone(self, clone_id: int) -> Dict[str, Any]:
        """
        클론을 detach -> unmount -> delete 순서로 정리하고 Removed로 표시합니다.

        각 단계는 이미 없는 대상을 성공으로 취급하므로, 부분 실패 후 다시 호출하면
        남은 단계만 마저 진행됩니다. Failed 클론도 다시 제거할 수 있습니다.

        Returns:
            Removed 상태가 된 클론 정보 딕셔너리.

        Raises:
            CloneNotFoundError: 클론이 없거나 이미 Removed일 때.
            OperationInProgressError: 같은 클론에 다른 작업이 진행 중일 때.
            OperationTimeoutError: 데드라인을 넘겼을 때. 클론은 Disabling으로 남습니다.
            StorageError: 정리 단계가 실패했을 때. 클론은 Failed가 됩니다.
        """
        with self.locks.hold(("clone", clone_id)):
            clone = self.registry.get_live(clone_id)
            if clone.status == CloneStatus.FAILED:
                # Failed는 참조 카운트에서 빠져 있으므로 다시 Disabling으로 들어갈 때 잡습니다.
                with self.tracker.registry_write():
                    self.tracker.acquire(clone.image_id)
                    try:
                        clone = self.registry.transition(clone, CloneStatus.DISABLING)
                    except Exception:
                        self.tracker.release(clone.image_id)
                        raise
            else:
                clone = self.registry.transition(clone, CloneStatus.DISABLING)
            logger.info("Clone %s disabling", clone.id)
            clone = self._drive_remove(clone, self.caller.deadline())
        return clone_to_dict(clone)

    def _drive_remove(self, clone: models.Clone, deadline: Deadline) -> models.Clone:
        diff_location = clone.clone_location or self._derive_location(clone)
        try:
            self.caller.call("detach_database", self.binder.detach_database,
                             clone.sql_instance, clone.database_name, deadline=deadline)
            if clone.last_step == CloneStep.ATTACHED:
                clone = self.registry.record_step(clone, CloneStep.MOUNTED)

            # access_path가 기록되기 전에 끝난 mount도 있으므로 항상 언마운트합니다.
            self.caller.call("unmount", self.binder.unmount, self._access_path_of(clone, diff_location),
                             deadline=deadline)
            if clone.last_step in (CloneStep.ATTACHED, CloneStep.MOUNTED):
                clone = self.registry.record_step(clone, CloneStep.ALLOCATED)

            self.caller.call("delete_diff", self.binder.delete_diff, diff_location, deadline=deadline)
        except OperationTimeoutError:
            logger.warning("Clone %s removal timed out; left in %s for reconcile", clone.id, clone.status)
            raise
        except Exception as e:
            logger.error("Clone %s removal failed: %s", clone.id, e)
            self._mark_failed(clone, e, [], release=True)
            raise

        with self.tracker.registry_write():
            clone = self.registry.transition(clone, CloneStatus.REMOVED, last_step=None, last_error=None)
            self.tracker.release(clone.image_id)
        logger.info("Clone %s removed", clone.id)
        return clone

    def _derive_location(self, clone: models.Clone) -> str:
        image = clone.image or self.image_service.get_image(clone.image_id)
        return self.diff_location_for(clone.id, image.location)

    def _access_path_of(self, clone: models.Clone, diff_location: str = None) -> str:
        """기록된 access path. 없으면 Storage Binder가 diff 위치로부터 정하는 경로."""
        return clone.access_path or self.binder.access_path_for(diff_location or clone.clone_location)

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------
    def rebuild_references(self) -> Dict[int, int]:
        """
        레지스트리를 다시 스캔해 참조 추적기를 복원합니다.
        acquire/release와 레지스트리 쓰기 사이에 있는 작업이 모두 끝난 뒤에 스캔합니다.
        """
        with self.tracker.quiesced():
            self.tracker.rebuild(self.registry.live_counts_by_image(),
                                 self.image_service.image_repo.list_retired_ids())
            return self.tracker.snapshot()

    def reconcile(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        시작 시 복구 작업입니다.

        참조 추적기를 레지스트리에서 다시 만들고, 활동이 멈춘 Provisioning 클론은
        마지막으로 완료된 단계 다음부터 Create를, Disabling 클론은 정리를 다시 진행합니다.
        어떤 레지스트리 행도 가리키지 않는 differencing 디스크는 보고만 하고 지우지 않습니다.

        Returns:
            resumed/removed/failed/skipped 클론 ID 목록과 유령 디스크 목록.
        """
        self.rebuild_references()
        summary = {"resumed": [], "removed": [], "failed": [], "skipped": [], "ghost_diffs": []}

        for stale in self.registry.list_stale_in_flight(self.stale_after_s, now=now):
            try:
                with self.locks.hold(("clone", stale.id)):
                    # 스캔 이후 다른 요청이 끝냈을 수 있으므로 잠금을 쥔 뒤 다시 읽습니다.
                    clone = self.registry.reload(stale.id)
                    if clone.status not in (CloneStatus.PROVISIONING, CloneStatus.DISABLING):
                        summary["skipped"].append(clone.id)
                    elif clone.status == CloneStatus.PROVISIONING:
                        logger.info("Reconcile: resuming create of clone %s after '%s'", clone.id, clone.last_step)
                        image = clone.image or self.image_service.get_image(clone.image_id)
                        self._drive_create(clone, image, self.caller.deadline())
                        summary["resumed"].append(clone.id)
                    elif clone.status == CloneStatus.DISABLING:
                        logger.info("Reconcile: resuming removal of clone %s", clone.id)
                        self._drive_remove(clone, self.caller.deadline())
                        summary["removed"].append(clone.id)
            except OperationInProgressError:
                summary["skipped"].append(stale.id)
            except Exception as e:
                logger.warning("Reconcile: clone %s could not be recovered: %s", stale.id, e)
                summary["failed"].append({"id": stale.id, "error": str(e)})

        summary["ghost_diffs"] = self.find_ghost_diffs()
        return summary

    def find_ghost_diffs(self) -> List[str]:
        """스토리지에는 있지만 레지스트리에는 없는 differencing 디스크 목록."""
        try:
            provider_locations = self.binder.list_diff_locations()
        except StorageError as e:
            logger.warning("Reconcile: could not list differencing disks: %s", e)
            return []
        known = set(self.registry.known_locations())
        prefix = os.path.join(self.diff_dir, "")
        ghosts = sorted(loc for loc in provider_locations if loc.startswith(prefix) and loc not in known)
        for location in ghosts:
            logger.warning("Reconcile: differencing disk %s is not tracked by the registry", location)
        return ghosts

    # ------------------------------------------------------------------
    # Verify / Repair
    # ------------------------------------------------------------------
    def verify_clone(self, clone_id: int) -> Dict[str, Any]:
        """
        Enabled/Inconsistent 클론의 실제 상태(디스크, 마운트, attach)를 확인합니다.
        Enabled인데 빠진 것이 있으면 Inconsistent로, Inconsistent인데 모두 정상이면
        Enabled로 바꿉니다. 그 외에는 상태를 추측해서 바꾸지 않습니다.
        """
        with self.locks.hold(("clone", clone_id)):
            clone = self._get_attached_clone(clone_id, "verify")
            checks = self._inspect(clone, self.caller.deadline())
            missing = [name for name, ok in checks.items() if not ok]

            if missing and clone.status == CloneStatus.ENABLED:
                clone = self.registry.transition(clone, CloneStatus.INCONSISTENT,
                                                 last_error="Verification failed: missing " + ", ".join(missing))
                logger.warning("Clone %s is inconsistent: missing %s", clone.id, ", ".join(missing))
            elif not missing and clone.status == CloneStatus.INCONSISTENT:
                clone = self.registry.transition(clone, CloneStatus.ENABLED, last_error=None)
            else:
                clone = self.registry.record(clone)

        return {"clone": clone_to_dict(clone), "checks": checks}

    def repair_clone(self, clone_id: int) -> Dict[str, Any]:
        """
        호스트 재부팅 등으로 마운트/attach가 풀린 클론을 다시 마운트하고 attach 합니다.

        Raises:
            InconsistentStateError: differencing 디스크 자체가 없을 때. 클론은 Inconsistent로 남습니다.
        """
        with self.locks.hold(("clone", clone_id)):
            clone = self._get_attached_clone(clone_id, "repair")
            deadline = self.caller.deadline()

            if not self.caller.call("diff_exists", self.binder.diff_exists, clone.clone_location, deadline=deadline):
                message = f"Differencing disk {clone.clone_location} of clone {clone.id} is missing."
                if clone.status == CloneStatus.ENABLED:
                    self.registry.transition(clone, CloneStatus.INCONSISTENT, last_error=message)
                else:
                    self.registry.record(clone, last_error=message)
                raise InconsistentStateError(message)

            try:
                access_path = self.caller.call("mount", self.binder.mount, clone.clone_location, deadline=deadline)
                clone = self.registry.record_step(clone, CloneStep.MOUNTED, access_path=access_path)
                self.caller.call("attach_database", self.binder.attach_database,
                                 access_path, clone.sql_instance, clone.database_name, deadline=deadline)
                clone = self.registry.record_step(clone, CloneStep.ATTACHED)
            except OperationTimeoutError:
                raise
            except Exception as e:
                if clone.status == CloneStatus.ENABLED:
                    self.registry.transition(clone, CloneStatus.INCONSISTENT, last_error=f"Repair failed: {e}")
                else:
                    self.registry.record(clone, last_error=f"Repair failed: {e}")
                raise

            if clone.status == CloneStatus.INCONSISTENT:
                clone = self.registry.transition(clone, CloneStatus.ENABLED, last_error=None)
            logger.info("Clone %s repaired at %s", clone.id, clone.access_path)
        return clone_to_dict(clone)

    def _get_attached_clone(self, clone_id: int, action: str) -> models.Clone:
        clone = self.registry.get_live(clone_id)
        if clone.status not in (CloneStatus.ENABLED, CloneStatus.INCONSISTENT):
            raise InvalidTransitionError(f"Cannot {action} clone '{clone_id}' in status {clone.status}.")
        return clone

    def _inspect(self, clone: models.Clone, deadline: Deadline) -> Dict[str, bool]:
        return {
            "diff": bool(clone.clone_location) and self.caller.call(
                "diff_exists", self.binder.diff_exists, clone.clone_location, deadline=deadline),
            "mounted": bool(clone.access_path) and self.caller.call(
                "is_mounted", self.binder.is_mounted, clone.access_path, deadline=deadline),
            "attached": self.caller.call(
                "is_attached", self.binder.is_attached, clone.sql_instance, clone.database_name, deadline=deadline),
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_clone(self, clone_id: int) -> Dict[str, Any]:
        return clone_to_dict(self.registry.get(clone_id))

    def list_clones(self, host_name: str = None, sql_instance: str = None, database_name: str = None,
                    image_id: int = None, status: str = None) -> List[Dict[str, Any]]:
        """조건에 맞는 클론 목록을 조회합니다. 조건을 주지 않으면 Removed를 포함한 전체를 돌려줍니다."""
        clones = self.registry.list(host_name=host_name, sql_instance=sql_instance,
                                    database_name=database_name, image_id=image_id, status=status)
        return [clone_to_dict(clone) for clone in clones]
