import json
import logging
import os
import time
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

DEFAULT_CONFIG_PATH = os.environ.get("CONFIG_PATH", os.path.join(os.getcwd(), "config.json"))

_cache: Optional["Settings"] = None


class ConfigError(RuntimeError):
    pass


class Settings(BaseModel):
    environment: Literal["development", "production", "test"] = "development"
    host: str = "0.0.0.0"
    port: int = 3000

    docker_socket_path: str = "/var/run/docker.sock"
    server_data_path: str = "./data/servers"
    default_memory: str = "2G"
    default_cpu_count: int = 2
    default_port: int = 25565
    default_version: str = "1.20.1"
    curseforge_api_key: Optional[str] = None

    redis_host: str = "localhost"
    redis_port: int = 6379
    log_limit: int = Field(default=1000, ge=1)

    api_token: Optional[str] = None
    public_paths: List[str] = Field(default_factory=lambda: ["/health", "/logs"])
    allowed_origins: str = "*"

    sandbox_prefix: str = "/data/"
    console_bridge: str = "rcon-cli"
    elevation_prefix: List[str] = Field(default_factory=lambda: ["sudo"])

    error_log_path: Optional[str] = None

    @field_validator("server_data_path")
    @classmethod
    def _absolute_data_path(cls, v: str) -> str:
        return os.path.abspath(v)

    @field_validator("sandbox_prefix")
    @classmethod
    def _prefix_has_slashes(cls, v: str) -> str:
        v = "/" + v.strip("/")
        return v if v == "/" else v + "/"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def origins(self) -> List[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


def _read_file(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"could not read config file {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a JSON object")
    return data


def _read_env(environ: Dict[str, str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if environ.get("APP_ENV"):
        out["environment"] = environ["APP_ENV"]
    for name, field in Settings.model_fields.items():
        raw = environ.get(name.upper())
        if raw is None or name == "environment":
            continue
        # list fields are comma separated in the environment
        if field.annotation == List[str]:
            out[name] = [p.strip() for p in raw.split(",") if p.strip()]
        else:
            out[name] = raw
    return out


def load_settings(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> Settings:
    """Defaults, then the JSON config file, then environment variables."""
    values = _read_file(path or DEFAULT_CONFIG_PATH)
    values.update(_read_env(dict(os.environ) if environ is None else environ))
    try:
        return Settings(**values)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise ConfigError(f"invalid configuration: {fields}") from e


def get_settings() -> Settings:
    global _cache
    if _cache is None:
        _cache = load_settings()
    return _cache


def reset_settings() -> None:
    global _cache
    _cache = None


class _ErrorFileFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        now = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(record.created))
        return f"[{now}] {record.getMessage()}"


def configure_logging(settings: Settings) -> None:
    level = logging.INFO if settings.environment != "test" else logging.WARNING
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if settings.error_log_path:
        root = logging.getLogger()
        target = os.path.abspath(settings.error_log_path)
        for h in root.handlers:
            if isinstance(h, logging.FileHandler) and h.baseFilename == target:
                return
        handler = logging.FileHandler(target)
        handler.setLevel(logging.ERROR)
        handler.setFormatter(_ErrorFileFormatter())
        root.addHandler(handler)
