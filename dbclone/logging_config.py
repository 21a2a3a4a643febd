# dbclone/logging_config.py
import logging
import sys
from pathlib import Path
from typing import Optional


def setup_logging(component_name: str, level=logging.INFO, log_file: Optional[str] = None,
                  format_string: Optional[str] = None) -> logging.Logger:
    """
    프로세스 전체의 로깅을 설정합니다.

    Args:
        component_name: 로그 라인에 표시할 컴포넌트 이름 (예: 'api').
        level: 로깅 레벨. 정수 또는 'INFO' 같은 문자열.
        log_file: 지정하면 콘솔과 함께 파일에도 기록합니다.
        format_string: 기본 포맷을 대체할 포맷 문자열.

    Returns:
        컴포넌트 이름의 로거.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    if format_string is None:
        format_string = f'[%(asctime)s] [{component_name.upper()}] %(levelname)s %(name)s - %(message)s'

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(level=level, format=format_string, datefmt='%Y-%m-%d %H:%M:%S',
                        handlers=handlers, force=True)

    logger = logging.getLogger(component_name)
    logger.info("%s logging initialized (level=%s)", component_name, logging.getLevelName(level))
    return logger
