from sqlalchemy import BigInteger, Column, DateTime, Integer, String, func
from ..database import Base


class Image(Base):
    """
    클론을 만들 때 읽기 전용 base로 쓰이는 데이터베이스 마스터 스냅샷입니다.
    (예: 'Sales-2026-10-01').
    한 번 등록되면 변경되지 않으며, 새 이미지로 대체되거나 retire될 뿐입니다.
    retired_at이 채워진 이미지는 카탈로그에서 보이지 않습니다.
    """
    __tablename__ = "images"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, index=True)
    location = Column(String, nullable=False, index=True)
    source_database_name = Column(String, nullable=False)
    source_database_timestamp = Column(DateTime, nullable=False)
    size_bytes = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now())
    retired_at = Column(DateTime, nullable=True)
