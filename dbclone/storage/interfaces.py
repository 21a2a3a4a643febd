from abc import ABC, abstractmethod
from typing import List


class IStorageBinder(ABC):
    """
    differencing 디스크 제공자와 데이터베이스 엔진을 감싸는 인터페이스입니다.

    모든 메서드는 멱등이어야 합니다. 같은 diff_location으로 allocate_diff를 두 번
    불러도 디스크는 하나만 생기고, 이미 없는 대상에 대한 detach/unmount/delete는
    성공으로 끝납니다. 실패는 dbclone.services.exceptions 의 StorageError 하위
    예외(TransientIOError, AlreadyExistsError, StorageNotFoundError,
    PermissionDeniedError)로 분류해서 던집니다.
    """

    @abstractmethod
    def allocate_diff(self, base_location: str, diff_location: str) -> str:
        """base_location을 backing으로 하는 differencing 디스크를 만들고 그 경로를 반환합니다."""
        pass

    @abstractmethod
    def mount(self, diff_location: str) -> str:
        """differencing 디스크를 마운트하고 호스트에 노출되는 access path를 반환합니다."""
        pass

    @abstractmethod
    def access_path_for(self, diff_location: str) -> str:
        """mount가 돌려줄 access path. 마운트하지 않고도 diff 위치로부터 정해집니다."""
        pass

    @abstractmethod
    def attach_database(self, access_path: str, sql_instance: str, database_name: str) -> None:
        """access path의 데이터 파일로 SQL 인스턴스에 데이터베이스를 attach 합니다."""
        pass

    @abstractmethod
    def detach_database(self, sql_instance: str, database_name: str) -> None:
        """데이터베이스를 detach 합니다. 없으면 아무것도 하지 않습니다."""
        pass

    @abstractmethod
    def unmount(self, access_path: str) -> None:
        """access path를 언마운트합니다. 마운트되어 있지 않으면 아무것도 하지 않습니다."""
        pass

    @abstractmethod
    def delete_diff(self, diff_location: str) -> None:
        """differencing 디스크를 삭제합니다. 없으면 아무것도 하지 않습니다."""
        pass

    @abstractmethod
    def diff_exists(self, diff_location: str) -> bool:
        pass

    @abstractmethod
    def is_mounted(self, access_path: str) -> bool:
        pass

    @abstractmethod
    def is_attached(self, sql_instance: str, database_name: str) -> bool:
        pass

    @abstractmethod
    def list_diff_locations(self) -> List[str]:
        """제공자가 관리 중인 모든 differencing 디스크 경로. Reconcile이 유령 디스크를 찾을 때 씁니다."""
        pass
