from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional
from dbclone.database import models


class ICloneRepository(ABC):
    @abstractmethod
    def create(self, clone_model: models.Clone) -> models.Clone:
        """새로운 클론 행을 생성합니다. 커밋 후 ID가 채워진 객체를 반환합니다."""
        pass

    @abstractmethod
    def find_by_id(self, clone_id: int) -> Optional[models.Clone]:
        """ID로 클론을 조회합니다. (Removed 포함)"""
        pass

    @abstractmethod
    def reload(self, clone_id: int) -> Optional[models.Clone]:
        """다른 세션이 쓴 값까지 반영되도록 클론을 다시 읽습니다."""
        pass

    @abstractmethod
    def find_live_by_attach_point(self, host_name: str, sql_instance: str, database_name: str) -> Optional[models.Clone]:
        """해당 attach 지점을 점유한, Removed가 아닌 클론을 조회합니다."""
        pass

    @abstractmethod
    def list(self, host_name: Optional[str] = None, sql_instance: Optional[str] = None,
             database_name: Optional[str] = None, image_id: Optional[int] = None,
             status: Optional[str] = None) -> List[models.Clone]:
        """조건에 맞는 클론 목록을 조회합니다. None인 조건은 무시합니다."""
        pass

    @abstractmethod
    def list_stale(self, statuses: List[str], older_than: datetime) -> List[models.Clone]:
        """지정한 상태이면서 last_activity_at이 older_than 이전인 클론을 조회합니다."""
        pass

    @abstractmethod
    def list_all_locations(self) -> List[str]:
        """Removed가 아닌 클론의 clone_location 목록을 조회합니다."""
        pass

    @abstractmethod
    def count_live_by_image(self) -> Dict[int, int]:
        """
        이미지별로 참조 중인 클론 수를 집계합니다.

        Returns:
            {image_id: count}. 상태가 CloneStatus.LIVE 인 클론만 셉니다.
        """
        pass

    @abstractmethod
    def count_unremoved_by_image_id(self, image_id: int) -> int:
        """이미지를 참조하는, Removed가 아닌 모든 클론 수를 조회합니다. (Failed 포함)"""
        pass

    @abstractmethod
    def update(self, clone: models.Clone, **fields) -> models.Clone:
        """클론의 필드를 갱신하고 last_activity_at을 현재 시각으로 바꿉니다."""
        pass
