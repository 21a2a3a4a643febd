import logging

from .database import engine, Base
from . import models  # noqa: F401  (테이블 등록)

logger = logging.getLogger(__name__)


def initialize_db(bind=None):
    """
    메타데이터 DB의 테이블을 생성합니다. (이미 존재하면 생성하지 않음)
    이미지는 캡처 워크플로우가 등록하므로 기본 데이터는 넣지 않습니다.
    """
    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    logger.info("Metadata tables ready on %s", bind.url)


if __name__ == '__main__':
    initialize_db()
