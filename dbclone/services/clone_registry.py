import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from dbclone.database import models
from dbclone.database.models import CloneStatus, CloneStep
from dbclone.repositories.interfaces import ICloneRepository
from dbclone.services.exceptions import (
    CloneNotFoundError,
    DuplicateAttachPointError,
    InvalidTransitionError,
)

logger = logging.getLogger(__name__)

# 현재 상태 -> 허용되는 다음 상태
TRANSITIONS = {
    CloneStatus.PROVISIONING: {CloneStatus.ENABLED, CloneStatus.FAILED, CloneStatus.DISABLING},
    CloneStatus.ENABLED: {CloneStatus.DISABLING, CloneStatus.INCONSISTENT},
    CloneStatus.INCONSISTENT: {CloneStatus.ENABLED, CloneStatus.DISABLING},
    CloneStatus.DISABLING: {CloneStatus.DISABLING, CloneStatus.REMOVED, CloneStatus.FAILED},
    CloneStatus.FAILED: {CloneStatus.DISABLING},
    CloneStatus.REMOVED: set(),
}


def clone_to_dict(clone: models.Clone) -> Dict[str, Any]:
    return {
        "id": clone.id,
        "image_id": clone.image_id,
        "image_name": clone.image.name if clone.image else None,
        "image_location": clone.image.location if clone.image else None,
        "clone_location": clone.clone_location,
        "access_path": clone.access_path,
        "host_name": clone.host_name,
        "sql_instance": clone.sql_instance,
        "database_name": clone.database_name,
        "status": clone.status,
        "last_step": clone.last_step,
        "last_error": clone.last_error,
        "created_at": clone.created_at.isoformat() if clone.created_at else None,
        "last_activity_at": clone.last_activity_at.isoformat() if clone.last_activity_at else None,
    }


class CloneRegistry:
    """
    클론 레지스트리. 리포지토리 위에 상태 머신 규칙을 얹습니다.

    모든 상태 변경은 transition()을 거치며, 허용되지 않은 전이는
    InvalidTransitionError로 거부됩니다. 각 쓰기는 즉시 커밋되므로
    orchestrator가 중간에 죽어도 마지막으로 기록된 단계가 남습니다.
    """

    def __init__(self, clone_repo: ICloneRepository):
        self.clone_repo = clone_repo

    def insert_provisioning(self, image_id: int, host_name: str, sql_instance: str, database_name: str) -> models.Clone:
        """
        Provisioning 상태의 새 클론 행을 만듭니다.

        Raises:
            DuplicateAttachPointError: DB의 attach 지점 유니크 인덱스에 걸렸을 때.
        """
        new_clone = models.Clone(
            image_id=image_id,
            host_name=host_name,
            sql_instance=sql_instance,
            database_name=database_name,
            status=CloneStatus.PROVISIONING,
        )
        try:
            return self.clone_repo.create(new_clone)
        except IntegrityError as e:
            raise DuplicateAttachPointError(
                f"Attach point {host_name}/{sql_instance}/{database_name} is already in use."
            ) from e

    def get(self, clone_id: int) -> models.Clone:
        """
        Removed를 포함해 클론을 조회합니다.

        Raises:
            CloneNotFoundError: 해당 ID의 클론이 없을 때.
        """
        clone = self.clone_repo.find_by_id(clone_id)
        if not clone:
            raise CloneNotFoundError(f"Clone '{clone_id}' not found.")
        return clone

    def reload(self, clone_id: int) -> models.Clone:
        """세션에 캐시된 값을 버리고 저장소에서 다시 읽습니다. 없으면 CloneNotFoundError."""
        clone = self.clone_repo.reload(clone_id)
        if not clone:
            raise CloneNotFoundError(f"Clone '{clone_id}' not found.")
        return clone

    def get_live(self, clone_id: int) -> models.Clone:
        """Removed가 아닌 클론만 돌려줍니다. Removed면 CloneNotFoundError."""
        clone = self.get(clone_id)
        if clone.status == CloneStatus.REMOVED:
            raise CloneNotFoundError(f"Clone '{clone_id}' has already been removed.")
        return clone

    def find_attach_point_owner(self, host_name: str, sql_instance: str, database_name: str) -> Optional[models.Clone]:
        return self.clone_repo.find_live_by_attach_point(host_name, sql_instance, database_name)

    def transition(self, clone: models.Clone, new_status: str, **fields) -> models.Clone:
        """
        클론 상태를 바꿉니다. 다른 필드(last_error 등)도 함께 기록할 수 있습니다.

        Raises:
            InvalidTransitionError: 현재 상태에서 new_status로 갈 수 없을 때.
        """
        current = clone.status
        if new_status not in TRANSITIONS.get(current, set()):
            raise InvalidTransitionError(f"Clone '{clone.id}' cannot move from {current} to {new_status}.")
        updated = self.clone_repo.update(clone, status=new_status, **fields)
        logger.info("Clone %s: %s -> %s", clone.id, current, new_status)
        return updated

    def record_step(self, clone: models.Clone, step: Optional[str], **fields) -> models.Clone:
        """Storage Binder 단계가 끝날 때마다 last_step(및 위치 정보)을 남깁니다."""
        if step is not None and step not in CloneStep.ORDER:
            raise ValueError(f"Unknown clone step '{step}'.")
        return self.clone_repo.update(clone, last_step=step, **fields)

    def record(self, clone: models.Clone, **fields) -> models.Clone:
        return self.clone_repo.update(clone, **fields)

    def list(self, **filters) -> List[models.Clone]:
        status = filters.get("status")
        if status is not None and status not in CloneStatus.ALL:
            raise ValueError(f"Unknown clone status '{status}'.")
        return self.clone_repo.list(**filters)

    def list_stale_in_flight(self, stale_after_s: int, now: Optional[datetime] = None) -> List[models.Clone]:
        """활동이 멈춘 Provisioning/Disabling 클론 목록. Reconcile이 사용합니다."""
        now = now or datetime.now()
        older_than = now - timedelta(seconds=stale_after_s)
        return self.clone_repo.list_stale([CloneStatus.PROVISIONING, CloneStatus.DISABLING], older_than)

    def live_counts_by_image(self) -> Dict[int, int]:
        return self.clone_repo.count_live_by_image()

    def unremoved_count(self, image_id: int) -> int:
        return self.clone_repo.count_unremoved_by_image_id(image_id)

    def known_locations(self) -> List[str]:
        return self.clone_repo.list_all_locations()
