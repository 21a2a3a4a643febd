from datetime import datetime
from typing import Dict, List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session
from dbclone.database import models
from dbclone.database.models import CloneStatus
from dbclone.repositories.interfaces import ICloneRepository


class SqlalchemyCloneRepository(ICloneRepository):
    def __init__(self, db_session: Session):
        self.db = db_session

    def create(self, clone_model: models.Clone) -> models.Clone:
        clone_model.last_activity_at = datetime.now()
        self.db.add(clone_model)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(clone_model)
        return clone_model

    def find_by_id(self, clone_id: int) -> Optional[models.Clone]:
        return self.db.query(models.Clone).filter(models.Clone.id == clone_id).first()

    def reload(self, clone_id: int) -> Optional[models.Clone]:
        return self.db.query(models.Clone).populate_existing().filter(models.Clone.id == clone_id).first()

    def find_live_by_attach_point(self, host_name: str, sql_instance: str, database_name: str) -> Optional[models.Clone]:
        return self.db.query(models.Clone).filter(
            models.Clone.host_name == host_name,
            models.Clone.sql_instance == sql_instance,
            models.Clone.database_name == database_name,
            models.Clone.status != CloneStatus.REMOVED,
        ).first()

    def list(self, host_name=None, sql_instance=None, database_name=None, image_id=None, status=None) -> List[models.Clone]:
        query = self.db.query(models.Clone)
        if host_name is not None:
            query = query.filter(models.Clone.host_name == host_name)
        if sql_instance is not None:
            query = query.filter(models.Clone.sql_instance == sql_instance)
        if database_name is not None:
            query = query.filter(models.Clone.database_name == database_name)
        if image_id is not None:
            query = query.filter(models.Clone.image_id == image_id)
        if status is not None:
            query = query.filter(models.Clone.status == status)
        return query.order_by(models.Clone.id.asc()).all()

    def list_stale(self, statuses: List[str], older_than: datetime) -> List[models.Clone]:
        return self.db.query(models.Clone).filter(
            models.Clone.status.in_(statuses),
            models.Clone.last_activity_at < older_than,
        ).order_by(models.Clone.id.asc()).all()

    def list_all_locations(self) -> List[str]:
        rows = self.db.query(models.Clone.clone_location).filter(
            models.Clone.status != CloneStatus.REMOVED,
            models.Clone.clone_location.isnot(None),
        ).all()
        return [row[0] for row in rows]

    def count_live_by_image(self) -> Dict[int, int]:
        rows = self.db.query(models.Clone.image_id, func.count(models.Clone.id)).filter(
            models.Clone.status.in_(CloneStatus.LIVE)
        ).group_by(models.Clone.image_id).all()
        return {image_id: count for image_id, count in rows}

    def count_unremoved_by_image_id(self, image_id: int) -> int:
        return self.db.query(models.Clone).filter(
            models.Clone.image_id == image_id,
            models.Clone.status != CloneStatus.REMOVED,
        ).count()

    def update(self, clone: models.Clone, **fields) -> models.Clone:
        for key, value in fields.items():
            setattr(clone, key, value)
        clone.last_activity_at = datetime.now()
        self.db.commit()
        self.db.refresh(clone)
        return clone
