from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text, func, text
from sqlalchemy.orm import relationship
from ..database import Base


class CloneStatus:
    PROVISIONING = "Provisioning"
    ENABLED = "Enabled"
    DISABLING = "Disabling"
    REMOVED = "Removed"
    FAILED = "Failed"
    INCONSISTENT = "Inconsistent"

    # 이미지 참조 카운트에 포함되는 상태
    LIVE = (PROVISIONING, ENABLED, DISABLING, INCONSISTENT)
    ALL = (PROVISIONING, ENABLED, DISABLING, REMOVED, FAILED, INCONSISTENT)


class CloneStep:
    """Storage Binder 단계. last_step에는 마지막으로 완료된 단계가 기록됩니다."""
    ALLOCATED = "allocated"
    MOUNTED = "mounted"
    ATTACHED = "attached"

    ORDER = (ALLOCATED, MOUNTED, ATTACHED)


class Clone(Base):
    """
    이미지로부터 copy-on-write 방식으로 만들어진, 쓰기 가능한 데이터베이스 사본입니다.
    특정 호스트의 SQL 인스턴스에 database_name으로 attach 됩니다.
    식별 필드(image_id, 위치, attach 지점)는 불변이고 status만 바뀝니다.
    """
    __tablename__ = "clones"
    id = Column(Integer, primary_key=True, index=True)
    image_id = Column(Integer, ForeignKey("images.id"), nullable=False, index=True)
    clone_location = Column(String, nullable=True)
    access_path = Column(String, nullable=True)
    host_name = Column(String, nullable=False)
    sql_instance = Column(String, nullable=False)
    database_name = Column(String, nullable=False)
    status = Column(String, nullable=False, default=CloneStatus.PROVISIONING, index=True)
    last_step = Column(String, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    last_activity_at = Column(DateTime, nullable=False, server_default=func.now())

    image = relationship("Image")

    # Removed가 아닌 클론끼리는 같은 attach 지점을 쓸 수 없습니다.
    __table_args__ = (
        Index(
            "uq_clones_live_attach_point",
            "host_name", "sql_instance", "database_name",
            unique=True,
            sqlite_where=text("status != 'Removed'"),
            postgresql_where=text("status != 'Removed'"),
        ),
    )
