import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()

REQUIRED_ENV_VARS = (
    "DATABASE_URL",
    "MINIO_ENDPOINT",
    "MINIO_ACCESS_KEY",
    "MINIO_SECRET_KEY",
)

POSITIVE_INT_ENV_VARS = (
    "MAX_UPLOAD_BYTES",
    "STORE_TIMEOUT_SECONDS",
    "PRESIGN_TTL_SECONDS",
    "PRESIGN_MAX_TTL_SECONDS",
    "RECONCILE_GRACE_SECONDS",
)

DEFAULT_MAX_UPLOAD_BYTES = 100 * 1024 * 1024


def _env(name: str) -> str | None:
    raw_value = os.getenv(name)
    if raw_value is None:
        return None
    normalized = raw_value.strip()
    return normalized or None


def _env_int(name: str, default: int) -> int:
    value = _env(name)
    if value is None:
        return default
    return int(value)


def collect_missing_required_env_vars() -> list[str]:
    return sorted(name for name in REQUIRED_ENV_VARS if _env(name) is None)


def collect_invalid_env_values() -> list[str]:
    invalid_values: list[str] = []

    for var_name in POSITIVE_INT_ENV_VARS:
        value = _env(var_name)
        if value is None:
            continue
        try:
            if int(value) <= 0:
                raise ValueError("must be positive")
        except ValueError:
            invalid_values.append(f"{var_name} must be a positive integer")

    ttl = _env("PRESIGN_TTL_SECONDS")
    max_ttl = _env("PRESIGN_MAX_TTL_SECONDS")
    if ttl and max_ttl and ttl.isdigit() and max_ttl.isdigit() and int(ttl) > int(max_ttl):
        invalid_values.append("PRESIGN_TTL_SECONDS must not exceed PRESIGN_MAX_TTL_SECONDS")

    log_level = (_env("LOG_LEVEL") or "INFO").upper()
    if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        invalid_values.append("LOG_LEVEL must be one of: DEBUG, INFO, WARNING, ERROR, CRITICAL")

    return invalid_values


def validate_required_environment() -> None:
    missing_vars = collect_missing_required_env_vars()
    invalid_values = collect_invalid_env_values()
    if not missing_vars and not invalid_values:
        return

    message_lines = ["Application startup blocked by invalid environment configuration."]
    if missing_vars:
        message_lines.append("")
        message_lines.append("Missing required environment variables:")
        message_lines.extend(f"- {name}" for name in missing_vars)
    if invalid_values:
        message_lines.append("")
        message_lines.append("Invalid environment values:")
        message_lines.extend(f"- {message}" for message in invalid_values)
    raise RuntimeError("\n".join(message_lines))


@dataclass(frozen=True)
class Settings:
    database_url: str
    minio_endpoint: str
    minio_access_key: str
    minio_secret_key: str
    minio_region: str = "us-east-1"
    minio_bucket: str = "drive"
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    store_timeout_seconds: int = 5
    presign_ttl_seconds: int = 900
    presign_max_ttl_seconds: int = 7 * 24 * 3600
    api_key: str = ""
    scope_token_secret: str = ""
    reconcile_grace_seconds: int = 3600
    log_level: str = "INFO"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    validate_required_environment()

    return Settings(
        database_url=os.environ["DATABASE_URL"].strip(),
        minio_endpoint=os.environ["MINIO_ENDPOINT"].strip(),
        minio_access_key=os.environ["MINIO_ACCESS_KEY"].strip(),
        minio_secret_key=os.environ["MINIO_SECRET_KEY"].strip(),
        minio_region=_env("MINIO_REGION") or "us-east-1",
        minio_bucket=_env("MINIO_BUCKET") or "drive",
        max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES),
        store_timeout_seconds=_env_int("STORE_TIMEOUT_SECONDS", 5),
        presign_ttl_seconds=_env_int("PRESIGN_TTL_SECONDS", 900),
        presign_max_ttl_seconds=_env_int("PRESIGN_MAX_TTL_SECONDS", 7 * 24 * 3600),
        api_key=_env("DRIVE_API_KEY") or "",
        scope_token_secret=_env("SCOPE_TOKEN_SECRET") or "",
        reconcile_grace_seconds=_env_int("RECONCILE_GRACE_SECONDS", 3600),
        log_level=(_env("LOG_LEVEL") or "INFO").upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("botocore", "boto3", "urllib3", "s3transfer"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
