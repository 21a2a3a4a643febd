# dbclone/config.py
import os


def _int_env(name: str, default: int) -> int:
    raw = str(os.getenv(name, str(default))).strip()
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = str(os.getenv(name, str(default))).strip()
    try:
        return float(raw)
    except ValueError:
        return default


def _str_env(name: str, default: str) -> str:
    return str(os.getenv(name, default)).strip()


# 메타데이터 DB (이미지 카탈로그 + 클론 레지스트리)
DATABASE_URL = _str_env("DBCLONE_DATABASE_URL", "sqlite:///dbclone_metadata.db")

# 스토리지 바인더: libvirt 스토리지 풀에 qcow2 differencing 볼륨을 만듭니다.
LIBVIRT_URI = _str_env("DBCLONE_LIBVIRT_URI", "qemu:///system")
STORAGE_POOL = _str_env("DBCLONE_STORAGE_POOL", "dbclone")
DIFF_DIR = _str_env("DBCLONE_DIFF_DIR", "/var/lib/dbclone/diffs")
MOUNT_ROOT = _str_env("DBCLONE_MOUNT_ROOT", "/mnt/dbclone")

# {instance} 자리에 SQL 인스턴스 이름이 들어갑니다.
SQLSERVER_URL_TEMPLATE = _str_env(
    "DBCLONE_SQLSERVER_URL_TEMPLATE",
    "mssql+pyodbc://@{instance}/master?driver=ODBC+Driver+18+for+SQL+Server&trusted_connection=yes",
)

# 재시도 / 데드라인
RETRY_MAX_ATTEMPTS = _int_env("DBCLONE_RETRY_MAX_ATTEMPTS", 3)
RETRY_BACKOFF_MS = _int_env("DBCLONE_RETRY_BACKOFF_MS", 200)
OPERATION_TIMEOUT_S = _float_env("DBCLONE_OPERATION_TIMEOUT_S", 600.0)
BINDER_WORKERS = _int_env("DBCLONE_BINDER_WORKERS", 8)

# Reconcile: 이 시간(초) 이상 활동이 없는 Provisioning/Disabling 클론만 다시 진행합니다.
RECONCILE_STALE_AFTER_S = _int_env("DBCLONE_RECONCILE_STALE_AFTER_S", 900)

API_PORT = _int_env("DBCLONE_API_PORT", 8000)
LOG_LEVEL = _str_env("DBCLONE_LOG_LEVEL", "INFO")
LOG_FILE = _str_env("DBCLONE_LOG_FILE", "")
