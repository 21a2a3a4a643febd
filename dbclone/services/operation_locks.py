import threading
from contextlib import contextmanager
from typing import Hashable

from dbclone.services.exceptions import OperationInProgressError


class OperationLockTable:
    """
    키(클론 ID, attach 지점 등)별 상호 배제 토큰 테이블입니다.

    기다리지 않습니다. 이미 다른 작업이 토큰을 쥐고 있으면 즉시
    OperationInProgressError를 던집니다.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._held = set()

    @contextmanager
    def hold(self, key: Hashable):
        with self._guard:
            if key in self._held:
                raise OperationInProgressError(f"Another operation is in progress for {key!r}.")
            self._held.add(key)
        try:
            yield
        finally:
            with self._guard:
                self._held.discard(key)

    def is_held(self, key: Hashable) -> bool:
        with self._guard:
            return key in self._held
