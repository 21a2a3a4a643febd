import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable

from dbclone.services.exceptions import ImageInUseError, ImageNotFoundError, InvalidReleaseError

logger = logging.getLogger(__name__)


class ReferenceTracker:
    """
    이미지별로 살아있는 클론 수를 세는 캐시입니다.

    진짜 값은 클론 레지스트리에 있고, 이 객체는 그 projection일 뿐입니다.
    프로세스가 재시작되면 rebuild()로 레지스트리를 다시 스캔해 복원합니다.
    모든 변경은 하나의 락으로 직렬화되므로, acquire와 retire의 0 확인이
    서로 끼어들 수 없습니다.

    카운트 변경과 그에 짝이 되는 레지스트리 쓰기는 registry_write() 안에서 함께
    일어나야 합니다. rebuild는 quiesced() 안에서 그런 구간이 모두 끝나기를 기다린 뒤
    레지스트리를 스캔하므로, 반쯤 기록된 작업의 참조를 잃지 않습니다.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._counts: Dict[int, int] = {}
        self._retired = set()
        self._writers = 0
        self._rebuilding = False

    def acquire(self, image_id: int) -> int:
        """
        이미지 참조를 하나 늘립니다. Storage Binder 호출보다 먼저 불려야 합니다.

        Raises:
            ImageNotFoundError: 이미 retire된 이미지일 때.
        """
        with self._lock:
            if image_id in self._retired:
                raise ImageNotFoundError(f"Image '{image_id}' has been retired.")
            count = self._counts.get(image_id, 0) + 1
            self._counts[image_id] = count
        logger.debug("Reference acquired image=%s count=%s", image_id, count)
        return count

    def release(self, image_id: int) -> int:
        """
        이미지 참조를 하나 줄입니다.

        Raises:
            InvalidReleaseError: 카운트가 이미 0일 때.
        """
        with self._lock:
            count = self._counts.get(image_id, 0)
            if count <= 0:
                raise InvalidReleaseError(f"Image '{image_id}' has no references to release.")
            count -= 1
            if count:
                self._counts[image_id] = count
            else:
                self._counts.pop(image_id, None)
        logger.debug("Reference released image=%s count=%s", image_id, count)
        return count

    def count(self, image_id: int) -> int:
        with self._lock:
            return self._counts.get(image_id, 0)

    def snapshot(self) -> Dict[int, int]:
        with self._lock:
            return dict(self._counts)

    def rebuild(self, counts: Dict[int, int], retired_ids: Iterable[int] = ()) -> None:
        """레지스트리 스캔 결과로 캐시를 통째로 교체합니다."""
        with self._lock:
            self._counts = {image_id: count for image_id, count in counts.items() if count > 0}
            self._retired = set(retired_ids)
        logger.info("Reference tracker rebuilt: %s image(s) referenced", len(self._counts))

    @contextmanager
    def retiring(self, image_id: int):
        """
        이미지 retire 구간을 감쌉니다.

        락을 쥔 채로 카운트가 0인지 확인하고 블록을 실행하므로, 그 사이에
        acquire가 끼어들 수 없습니다. 블록이 예외 없이 끝나면 이미지를
        retired로 표시해 이후 acquire를 막습니다.

        Raises:
            ImageInUseError: 참조 카운트가 0이 아닐 때.
        """
        with self._lock:
            count = self._counts.get(image_id, 0)
            if count:
                raise ImageInUseError(f"Image '{image_id}' is still referenced by {count} clone(s).")
            yield
            self._retired.add(image_id)

    @contextmanager
    def registry_write(self):
        """
        acquire/release와 그에 대응하는 레지스트리 쓰기(행 생성, 상태 전이)를 묶는 구간.
        rebuild가 진행 중이면 끝날 때까지 기다렸다가 들어갑니다.
        """
        with self._idle:
            while self._rebuilding:
                self._idle.wait()
            self._writers += 1
        try:
            yield
        finally:
            with self._idle:
                self._writers -= 1
                if not self._writers:
                    self._idle.notify_all()

    @contextmanager
    def quiesced(self):
        """
        진행 중인 registry_write 구간이 모두 끝날 때까지 기다리고, 블록이 끝날 때까지
        새 구간과 acquire/release를 막습니다. 블록 안에서 레지스트리를 스캔해 rebuild 합니다.
        """
        with self._idle:
            self._rebuilding = True
            try:
                while self._writers:
                    self._idle.wait()
                yield
            finally:
                self._rebuilding = False
                self._idle.notify_all()
