import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Optional

from dbclone import config
from dbclone.services.exceptions import OperationTimeoutError, TransientIOError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff_ms: int
    timeout_s: float


def default_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.RETRY_MAX_ATTEMPTS,
        backoff_ms=config.RETRY_BACKOFF_MS,
        timeout_s=config.OPERATION_TIMEOUT_S,
    )


class Deadline:
    """작업 전체에 걸린 마감 시각. Storage Binder 호출마다 남은 시간을 넘겨줍니다."""

    def __init__(self, timeout_s: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires_at = clock() + timeout_s

    def remaining(self) -> float:
        return max(self._expires_at - self._clock(), 0.0)

    def expired(self) -> bool:
        return self.remaining() <= 0.0


class BinderCaller:
    """
    Storage Binder 호출을 워커 풀에서 실행하고, 데드라인과 재시도를 적용합니다.

    TransientIOError만 지수 백오프(+jitter)로 재시도합니다. 데드라인이 지나면
    OperationTimeoutError를 던지고 기다림을 멈출 뿐, 진행 중인 호출을 취소하지는 않습니다.
    """

    def __init__(self, policy: Optional[RetryPolicy] = None, max_workers: int = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.policy = policy or default_retry_policy()
        self._executor = ThreadPoolExecutor(max_workers=max_workers or config.BINDER_WORKERS,
                                            thread_name_prefix="binder")
        self._sleep = sleep

    def deadline(self) -> Deadline:
        return Deadline(self.policy.timeout_s)

    def call(self, step: str, func: Callable[..., Any], *args, deadline: Optional[Deadline] = None) -> Any:
        deadline = deadline or self.deadline()
        attempt = 1
        while True:
            if deadline.expired():
                raise OperationTimeoutError(f"Deadline exceeded before '{step}' (attempt {attempt}).")
            future = self._executor.submit(func, *args)
            try:
                return future.result(timeout=deadline.remaining())
            except FutureTimeoutError:
                raise OperationTimeoutError(f"Deadline exceeded while waiting on '{step}'.") from None
            except TransientIOError as e:
                if attempt >= max(self.policy.max_attempts, 1):
                    logger.warning("Step '%s' failed after %s attempt(s): %s", step, attempt, e)
                    raise
                delay = (self.policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)
                delay = min(delay, deadline.remaining())
                logger.info("Transient failure in '%s' (attempt %s/%s), retrying in %.2fs: %s",
                            step, attempt, self.policy.max_attempts, delay, e)
                self._sleep(delay)
                attempt += 1

    def shutdown(self):
        self._executor.shutdown(wait=False)
