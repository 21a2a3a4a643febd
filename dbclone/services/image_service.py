import logging
import threading
from datetime import datetime
from typing import Any, Dict, List

from dbclone.database import models
from dbclone.repositories.interfaces import IImageRepository, ICloneRepository
from dbclone.services.reference_tracker import ReferenceTracker
from dbclone.services.exceptions import DuplicateImageError, ImageInUseError, ImageNotFoundError

logger = logging.getLogger(__name__)

# 같은 위치의 이미지가 동시에 두 번 등록되지 않도록 직렬화합니다.
_register_lock = threading.Lock()


def image_to_dict(image: models.Image, reference_count: int = None) -> Dict[str, Any]:
    data = {
        "id": image.id,
        "name": image.name,
        "location": image.location,
        "source_database_name": image.source_database_name,
        "source_database_timestamp": image.source_database_timestamp.isoformat()
        if image.source_database_timestamp else None,
        "size_bytes": image.size_bytes,
        "created_at": image.created_at.isoformat() if image.created_at else None,
    }
    if reference_count is not None:
        data["reference_count"] = reference_count
    return data


class ImageService:
    """이미지 카탈로그. 이미지는 한 번 쓰면 바뀌지 않으므로 등록, 조회, retire만 제공합니다."""

    def __init__(self, image_repo: IImageRepository, clone_repo: ICloneRepository, tracker: ReferenceTracker):
        """
        ImageService를 초기화합니다.

        Args:
            image_repo: 이미지 데이터에 접근하기 위한 리포지토리.
            clone_repo: retire 전에 남은 클론을 확인하기 위한 리포지토리.
            tracker: 이미지별 참조 카운트.
        """
        self.image_repo = image_repo
        self.clone_repo = clone_repo
        self.tracker = tracker

    def register_image(self, name: str, location: str, source_database_name: str,
                       source_database_timestamp: datetime, size_bytes: int = 0) -> Dict[str, Any]:
        """
        캡처 워크플로우가 만든 이미지를 카탈로그에 등록합니다.

        Args:
            name: 이미지 이름.
            location: 마스터 base 디스크의 경로.
            source_database_name: 원본 데이터베이스 이름.
            source_database_timestamp: 스냅샷이 나타내는 시점.
            size_bytes: base 디스크 크기.

        Returns:
            등록된 이미지 정보 딕셔너리.

        Raises:
            DuplicateImageError: 같은 위치나 이름의 이미지가 이미 있을 때.
            ValueError: 필수 값이 비어 있을 때.
        """
        if not name or not location or not source_database_name:
            raise ValueError("name, location and source_database_name are required.")
        if not source_database_timestamp:
            raise ValueError("source_database_timestamp is required.")
        if isinstance(source_database_timestamp, str):
            source_database_timestamp = datetime.fromisoformat(source_database_timestamp)
        if size_bytes is None or int(size_bytes) < 0:
            raise ValueError("size_bytes must be a non-negative integer.")

        with _register_lock:
            if self.image_repo.find_by_location(location):
                raise DuplicateImageError(f"An image at '{location}' is already registered.")
            if self.image_repo.find_by_name(name):
                raise DuplicateImageError(f"Image name '{name}' already exists.")

            new_image = models.Image(
                name=name,
                location=location,
                source_database_name=source_database_name,
                source_database_timestamp=source_database_timestamp,
                size_bytes=int(size_bytes),
            )
            created = self.image_repo.create(new_image)

        logger.info("Image %s registered: %s (%s)", created.id, name, location)
        return image_to_dict(created, reference_count=0)

    def get_image(self, image_id: int) -> models.Image:
        """
        ID로 이미지를 조회합니다.

        Raises:
            ImageNotFoundError: 이미지가 없거나 retire되었을 때.
        """
        image = self.image_repo.find_by_id(image_id)
        if not image:
            raise ImageNotFoundError(f"Image '{image_id}' not found.")
        return image

    def describe_image(self, image_id: int) -> Dict[str, Any]:
        image = self.get_image(image_id)
        return image_to_dict(image, reference_count=self.tracker.count(image.id))

    def list_images(self) -> List[Dict[str, Any]]:
        """retire되지 않은 이미지 목록을 참조 카운트와 함께 반환합니다."""
        return [image_to_dict(image, reference_count=self.tracker.count(image.id))
                for image in self.image_repo.list_active()]

    def retire_image(self, image_id: int) -> bool:
        """
        참조하는 클론이 없는 이미지를 retire합니다.

        참조 추적기의 retire 구간 안에서 레지스트리를 다시 읽으므로, 진행 중인
        Create가 acquire한 뒤라면 반드시 ImageInUseError가 납니다.
        Failed 클론도 base 디스크에 의존하므로 retire를 막습니다.

        Raises:
            ImageNotFoundError: 이미지가 없을 때.
            ImageInUseError: 참조 카운트가 0이 아니거나 Removed가 아닌 클론이 남아 있을 때.
        """
        image = self.get_image(image_id)
        with self.tracker.retiring(image.id):
            remaining = self.clone_repo.count_unremoved_by_image_id(image.id)
            if remaining:
                raise ImageInUseError(f"Image '{image_id}' still has {remaining} clone(s) that are not removed.")
            self.image_repo.mark_retired(image)
        logger.info("Image %s retired", image_id)
        return True
