import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional


def _coerce_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "y"}:
        return True
    if lowered in {"0", "false", "no", "n"}:
        return False
    return default


def _coerce_int(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _coerce_float(value: Optional[str], default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _coerce_path(value: Optional[str]) -> Optional[Path]:
    if value is None or not value.strip():
        return None
    return Path(value.strip())


@dataclass
class Settings:
    mysql_host: str
    mysql_port: int
    mysql_user: str
    mysql_password: str
    mysql_database: str
    mysql_connect_timeout_sec: int
    mysql_read_timeout_sec: int

    os_url: str
    index_prefix: str
    mapping_dir: Optional[Path]

    chunk_size: int
    bulk_size: int
    workers: int
    retry_max: int
    retry_backoff_sec: float
    timeout_sec: int
    max_connections: int
    connect_retries: int
    max_failures: int
    optimize: bool
    failure_log: Optional[Path]

    health_check_interval_sec: int
    health_sleep_yellow_sec: int
    health_sleep_red_sec: int

    @staticmethod
    def from_env() -> "Settings":
        return Settings(
            mysql_host=os.environ.get("MYSQL_HOST", "127.0.0.1"),
            mysql_port=_coerce_int(os.environ.get("MYSQL_PORT"), 3306),
            mysql_user=os.environ.get("MYSQL_USER", "fe"),
            mysql_password=os.environ.get("MYSQL_PASSWORD", "fe"),
            mysql_database=os.environ.get("MYSQL_DATABASE", "fe"),
            mysql_connect_timeout_sec=_coerce_int(os.environ.get("MYSQL_CONNECT_TIMEOUT_SEC"), 30),
            mysql_read_timeout_sec=_coerce_int(os.environ.get("MYSQL_READ_TIMEOUT_SEC"), 600),
            os_url=os.environ.get("OS_URL", "http://localhost:9200"),
            index_prefix=os.environ.get("FE_INDEX_PREFIX", ""),
            mapping_dir=_coerce_path(os.environ.get("FE_MAPPING_DIR")),
            chunk_size=_coerce_int(os.environ.get("FE_DB_CHUNK_SIZE"), 0),
            bulk_size=_coerce_int(os.environ.get("OS_BULK_SIZE"), 5000),
            workers=_coerce_int(os.environ.get("OS_BULK_WORKERS"), 0),
            retry_max=_coerce_int(os.environ.get("OS_RETRY_MAX"), 2),
            retry_backoff_sec=_coerce_float(os.environ.get("OS_RETRY_BACKOFF_SEC"), 1.0),
            timeout_sec=_coerce_int(os.environ.get("OS_TIMEOUT_SEC"), 100),
            max_connections=_coerce_int(os.environ.get("OS_MAX_CONNECTIONS"), 100),
            connect_retries=_coerce_int(os.environ.get("OS_CONNECT_RETRIES"), 1),
            max_failures=_coerce_int(os.environ.get("FE_MAX_FAILURES"), 1000),
            optimize=_coerce_bool(os.environ.get("FE_OPTIMIZE"), True),
            failure_log=_coerce_path(os.environ.get("FE_FAILURE_LOG")),
            health_check_interval_sec=_coerce_int(os.environ.get("OS_HEALTH_CHECK_INTERVAL_SEC"), 10),
            health_sleep_yellow_sec=_coerce_int(os.environ.get("OS_HEALTH_SLEEP_YELLOW_SEC"), 1),
            health_sleep_red_sec=_coerce_int(os.environ.get("OS_HEALTH_SLEEP_RED_SEC"), 5),
        )

    def override(self, params: Optional[Dict[str, Any]]) -> "Settings":
        """Return a copy with the non-None entries of ``params`` applied.

        Values are converted to the type of the field they replace, so CLI and
        JSON callers may pass strings. Unknown keys are ignored.
        """
        if not params:
            return self

        changes: Dict[str, Any] = {}
        for field in fields(self):
            if field.name not in params or params[field.name] is None:
                continue
            value = params[field.name]
            current = getattr(self, field.name)
            if field.name in ("mapping_dir", "failure_log"):
                changes[field.name] = value if isinstance(value, Path) else _coerce_path(str(value))
            elif isinstance(current, bool):
                changes[field.name] = value if isinstance(value, bool) else _coerce_bool(str(value), current)
            elif isinstance(current, int):
                changes[field.name] = int(value)
            elif isinstance(current, float):
                changes[field.name] = float(value)
            else:
                changes[field.name] = str(value)
        return replace(self, **changes)

    def index_name(self, index: str) -> str:
        return f"{self.index_prefix}{index}"
