# dbclone/services/exceptions.py

class CloneSystemError(Exception):
    """모든 도메인 예외의 기반 클래스. kind는 컨트롤 API 응답에 그대로 노출됩니다."""
    kind = "Error"


# --- Categories ---
class NotFoundError(CloneSystemError):
    """이미지/클론이 없을 때"""
    kind = "NotFound"


class ConflictError(CloneSystemError):
    """현재 상태와 충돌하는 요청일 때 (재시도해도 소용없음)"""
    kind = "Conflict"


class InconsistentStateError(CloneSystemError):
    """레지스트리와 실제 스토리지/엔진 상태가 다를 때. 운영자가 조치해야 합니다."""
    kind = "Inconsistent"


class OperationTimeoutError(CloneSystemError):
    """데드라인 안에 Storage Binder 호출이 끝나지 않았을 때. 클론 행은 그대로 남습니다."""
    kind = "Timeout"


# --- NotFound ---
class ImageNotFoundError(NotFoundError):
    """이미지를 찾을 수 없을 때 (retire된 이미지 포함)"""
    pass


class CloneNotFoundError(NotFoundError):
    """클론이 없거나 이미 Removed일 때"""
    pass


# --- Conflict ---
class DuplicateImageError(ConflictError):
    """같은 위치(또는 이름)의 이미지가 이미 등록되어 있을 때"""
    pass


class DuplicateAttachPointError(ConflictError):
    """(host, instance, database) 조합을 다른 클론이 이미 쓰고 있을 때"""
    pass


class ImageInUseError(ConflictError):
    """이미지를 참조하는 클론이 남아 있어 retire할 수 없을 때"""
    pass


class OperationInProgressError(ConflictError):
    """같은 클론(또는 attach 지점)에 다른 작업이 진행 중일 때"""
    pass


class InvalidTransitionError(ConflictError):
    """허용되지 않는 클론 상태 전이를 요청했을 때"""
    pass


class InvalidReleaseError(ConflictError):
    """참조 카운트가 이미 0인데 release 하려고 할 때"""
    pass


# --- Storage Binder Exceptions ---
class StorageError(CloneSystemError):
    """Storage Binder 호출 실패의 기반 클래스"""
    kind = "StorageError"


class TransientIOError(StorageError):
    """재시도 가능한 스토리지/네트워크 오류"""
    kind = "TransientIO"


class AlreadyExistsError(StorageError):
    """만들려는 대상이 이미 있을 때"""
    kind = "AlreadyExists"


class StorageNotFoundError(StorageError):
    """대상(볼륨, 마운트, 베이스 파일 등)이 없을 때"""
    kind = "NotFound"


class PermissionDeniedError(StorageError):
    """권한이 없어 작업할 수 없을 때"""
    kind = "PermissionDenied"
