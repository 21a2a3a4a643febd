# dbclone/app.py
from wsgiref.simple_server import make_server, WSGIServer
from socketserver import ThreadingMixIn
from urllib.parse import parse_qs
import json
import logging
import re
import sys
import threading

from dbclone import config
from dbclone.logging_config import setup_logging
from dbclone.database.database import SessionLocal
from dbclone.database.db_init import initialize_db
from dbclone.repositories.sqlalchemy.sqlalchemy_clone_repository import SqlalchemyCloneRepository
from dbclone.repositories.sqlalchemy.sqlalchemy_image_repository import SqlalchemyImageRepository
from dbclone.services.clone_service import CloneService
from dbclone.services.image_service import ImageService
from dbclone.services.operation_locks import OperationLockTable
from dbclone.services.reference_tracker import ReferenceTracker
from dbclone.services.retry import BinderCaller
from dbclone.services.exceptions import (
    CloneSystemError,
    ConflictError,
    InconsistentStateError,
    NotFoundError,
    OperationTimeoutError,
    PermissionDeniedError,
    StorageNotFoundError,
    TransientIOError,
)

logger = logging.getLogger(__name__)

# --------------------------------------------------------------------------
## 프로세스 전체에서 공유하는 상태
# --------------------------------------------------------------------------
# 요청마다 세션과 서비스는 새로 만들지만, 참조 카운트/잠금/워커 풀/바인더는 하나를 공유합니다.
tracker = ReferenceTracker()
locks = OperationLockTable()
_shared = {"binder": None, "caller": None}
_shared_lock = threading.Lock()


def get_binder():
    if _shared["binder"] is None:
        with _shared_lock:
            if _shared["binder"] is None:
                from dbclone.storage.libvirt_binder import LibvirtStorageBinder
                _shared["binder"] = LibvirtStorageBinder()
    return _shared["binder"]


def get_caller():
    if _shared["caller"] is None:
        with _shared_lock:
            if _shared["caller"] is None:
                _shared["caller"] = BinderCaller()
    return _shared["caller"]


class Services(dict):
    """
    요청 단위 서비스 묶음. 'clone' 서비스는 처음 꺼낼 때 만듭니다.

    이미지 카탈로그 경로는 바인더(libvirt 연결)를 만들지 않으므로
    하이퍼바이저가 내려가 있어도 응답할 수 있습니다.
    """

    def __init__(self, image_service, build_clone):
        super().__init__(image=image_service)
        self._build_clone = build_clone

    def __missing__(self, key):
        if key != 'clone':
            raise KeyError(key)
        self['clone'] = self._build_clone()
        return self['clone']


def build_services(db_session, binder=None, caller=None):
    """Repositories -> Services 순서로 의존성을 조립합니다."""
    clone_repo = SqlalchemyCloneRepository(db_session)
    image_repo = SqlalchemyImageRepository(db_session)

    image_service = ImageService(image_repo, clone_repo, tracker)

    def build_clone():
        return CloneService(clone_repo, image_service, binder or get_binder(), tracker, locks,
                            caller or get_caller())

    return Services(image_service, build_clone)

# --------------------------------------------------------------------------
## 요청 처리 유틸리티 함수
# --------------------------------------------------------------------------

def get_request_data(environ):
    try:
        content_length = int(environ.get("CONTENT_LENGTH") or 0)
        return json.loads(environ["wsgi.input"].read(content_length)) if content_length > 0 else {}
    except (ValueError, json.JSONDecodeError):
        raise ValueError("Invalid or missing JSON body.")


def get_query_params(environ):
    params = parse_qs(environ.get("QUERY_STRING", ""))
    return {key: values[-1] for key, values in params.items()}


def handle_exception(e):
    # 순서가 중요합니다: 구체적인 분류부터 확인합니다.
    error_map = [
        (StorageNotFoundError, "404 Not Found"),
        (NotFoundError, "404 Not Found"),
        (ConflictError, "409 Conflict"),
        (InconsistentStateError, "409 Conflict"),
        (PermissionDeniedError, "403 Forbidden"),
        (TransientIOError, "503 Service Unavailable"),
        (OperationTimeoutError, "504 Gateway Timeout"),
        (ValueError, "400 Bad Request"),
        (TypeError, "400 Bad Request"),
    ]
    status = next((code for error_type, code in error_map if isinstance(e, error_type)),
                  "500 Internal Server Error")
    if status.startswith("500"):
        logger.exception("Unhandled error while processing request")
    kind = e.kind if isinstance(e, CloneSystemError) else type(e).__name__
    return status, json.dumps({"error": str(e), "kind": kind})

# --------------------------------------------------------------------------
## WSGI 애플리케이션 (의존성 주입 및 라우팅)
# --------------------------------------------------------------------------

routes = []


def application(environ, start_response):
    db_session = SessionLocal()
    try:
        environ['services'] = build_services(db_session)

        path = environ.get("PATH_INFO", "")
        method = environ.get("REQUEST_METHOD", "")

        handler, path_args = None, []
        for route_method, pattern, route_handler in routes:
            if method == route_method and (match := re.match(pattern, path)):
                handler, path_args = route_handler, match.groups()
                break

        if handler:
            status, response_body = handler(environ, *path_args)
        else:
            status, response_body = '404 Not Found', json.dumps({'error': 'Not Found'})

    except Exception as e:
        status, response_body = handle_exception(e)
    finally:
        db_session.close()

    start_response(status, [("Content-Type", "application/json")])
    return [response_body.encode("utf-8")]

# --------------------------------------------------------------------------
## 핸들러 함수
# --------------------------------------------------------------------------

def list_images_handler(environ, *args):
    images = environ['services']['image'].list_images()
    return '200 OK', json.dumps({'images': images})


def register_image_handler(environ, *args):
    data = get_request_data(environ)
    image = environ['services']['image'].register_image(**data)
    return '201 Created', json.dumps(image)


def get_image_handler(environ, image_id):
    image = environ['services']['image'].describe_image(int(image_id))
    return '200 OK', json.dumps(image)


def retire_image_handler(environ, image_id):
    environ['services']['image'].retire_image(int(image_id))
    return '204 No Content', ''


def list_clones_handler(environ, *args):
    filters = get_query_params(environ)
    allowed = {'host_name', 'sql_instance', 'database_name', 'image_id', 'status'}
    unknown = set(filters) - allowed
    if unknown:
        raise ValueError(f"Unknown filter(s): {', '.join(sorted(unknown))}")
    if 'image_id' in filters:
        filters['image_id'] = int(filters['image_id'])
    clones = environ['services']['clone'].list_clones(**filters)
    return '200 OK', json.dumps({'clones': clones})


def create_clone_handler(environ, *args):
    data = get_request_data(environ)
    clone = environ['services']['clone'].create_clone(
        image_id=int(data.get('image_id')),
        host_name=data.get('host_name'),
        sql_instance=data.get('sql_instance'),
        database_name=data.get('database_name'),
    )
    return '201 Created', json.dumps(clone)


def get_clone_handler(environ, clone_id):
    clone = environ['services']['clone'].get_clone(int(clone_id))
    return '200 OK', json.dumps(clone)


def remove_clone_handler(environ, clone_id):
    clone = environ['services']['clone'].remove_clone(int(clone_id))
    return '200 OK', json.dumps(clone)


def verify_clone_handler(environ, clone_id):
    result = environ['services']['clone'].verify_clone(int(clone_id))
    return '200 OK', json.dumps(result)


def repair_clone_handler(environ, clone_id):
    clone = environ['services']['clone'].repair_clone(int(clone_id))
    return '200 OK', json.dumps(clone)


def reconcile_handler(environ, *args):
    summary = environ['services']['clone'].reconcile()
    return '200 OK', json.dumps(summary)


routes.extend([
    ('GET', r'^/v1/images$', list_images_handler),
    ('POST', r'^/v1/images$', register_image_handler),
    ('GET', r'^/v1/images/([0-9]+)$', get_image_handler),
    ('DELETE', r'^/v1/images/([0-9]+)$', retire_image_handler),
    ('GET', r'^/v1/clones$', list_clones_handler),
    ('POST', r'^/v1/clones$', create_clone_handler),
    ('GET', r'^/v1/clones/([0-9]+)$', get_clone_handler),
    ('DELETE', r'^/v1/clones/([0-9]+)$', remove_clone_handler),
    ('POST', r'^/v1/clones/([0-9]+)/actions/verify$', verify_clone_handler),
    ('POST', r'^/v1/clones/([0-9]+)/actions/repair$', repair_clone_handler),
    ('POST', r'^/v1/actions/reconcile$', reconcile_handler),
])

# --------------------------------------------------------------------------
## 서버 실행
# --------------------------------------------------------------------------

class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


def main():
    setup_logging("api", level=config.LOG_LEVEL, log_file=config.LOG_FILE or None)
    try:
        initialize_db()
        db_session = SessionLocal()
        try:
            summary = build_services(db_session)['clone'].reconcile()
            logger.info("Startup reconcile: %s", summary)
        finally:
            db_session.close()

        with make_server("", config.API_PORT, application, server_class=ThreadingWSGIServer) as httpd:
            logger.info("Serving dbclone control API on port %s...", config.API_PORT)
            httpd.serve_forever()
    except Exception as e:
        logger.exception("Error starting server: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
