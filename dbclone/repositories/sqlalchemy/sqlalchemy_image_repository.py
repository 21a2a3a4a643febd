from datetime import datetime
from typing import List, Optional
from sqlalchemy.orm import Session
from dbclone.database import models
from dbclone.repositories.interfaces import IImageRepository


class SqlalchemyImageRepository(IImageRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def _active(self):
        return self.db.query(models.Image).filter(models.Image.retired_at.is_(None))

    def create(self, image_model: models.Image) -> models.Image:
        self.db.add(image_model)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(image_model)
        return image_model

    def find_by_id(self, image_id: int) -> Optional[models.Image]:
        return self._active().filter(models.Image.id == image_id).first()

    def find_by_location(self, location: str) -> Optional[models.Image]:
        return self._active().filter(models.Image.location == location).first()

    def find_by_name(self, name: str) -> Optional[models.Image]:
        return self._active().filter(models.Image.name == name).first()

    def list_active(self) -> List[models.Image]:
        return self._active().order_by(models.Image.created_at.desc(), models.Image.id.desc()).all()

    def list_retired_ids(self) -> List[int]:
        rows = self.db.query(models.Image.id).filter(models.Image.retired_at.isnot(None)).all()
        return [row[0] for row in rows]

    def mark_retired(self, image: models.Image) -> models.Image:
        image.retired_at = datetime.now()
        self.db.commit()
        self.db.refresh(image)
        return image
