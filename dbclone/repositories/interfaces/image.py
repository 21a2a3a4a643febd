from abc import ABC, abstractmethod
from typing import List, Optional
from dbclone.database import models


class IImageRepository(ABC):
    @abstractmethod
    def create(self, image_model: models.Image) -> models.Image:
        """새로운 이미지를 데이터베이스에 등록합니다."""
        pass

    @abstractmethod
    def find_by_id(self, image_id: int) -> Optional[models.Image]:
        """ID로 retire되지 않은 이미지를 조회합니다."""
        pass

    @abstractmethod
    def find_by_location(self, location: str) -> Optional[models.Image]:
        """base 디스크 위치로 retire되지 않은 이미지를 조회합니다."""
        pass

    @abstractmethod
    def find_by_name(self, name: str) -> Optional[models.Image]:
        """이름으로 retire되지 않은 이미지를 조회합니다."""
        pass

    @abstractmethod
    def list_active(self) -> List[models.Image]:
        """retire되지 않은 모든 이미지의 목록을 조회합니다."""
        pass

    @abstractmethod
    def list_retired_ids(self) -> List[int]:
        """retire된 이미지의 ID 목록을 조회합니다. (참조 추적기 재구성용)"""
        pass

    @abstractmethod
    def mark_retired(self, image: models.Image) -> models.Image:
        """이미지에 retired_at을 기록합니다."""
        pass
