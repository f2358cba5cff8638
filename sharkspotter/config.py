from __future__ import annotations
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import pydantic
from pydantic import BaseModel, Field, field_validator, model_validator
import yaml

from .errors import ConfigError

INDEX_COLUMNS = ("_id", "_idx")
_DOMAIN_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9.-]*$")

class ScanConfig(BaseModel):
    begin: int = 0
    end: Optional[int] = None  # None scans until the shard is exhausted
    chunk_size: int = 100
    id_name: str = "_id"

class ShardRangeConfig(BaseModel):
    min_shard: int = 1
    max_shard: int = 1

class ConcurrencyConfig(BaseModel):
    multithreaded: bool = False
    max_threads: Optional[int] = None

class RetryConfig(BaseModel):
    attempts: int = 5
    backoff_multiplier: float = 1.0
    backoff_min: float = 1.0
    backoff_max: float = 30.0

class RpcConfig(BaseModel):
    host_template: str = "{shard}.moray.{domain}"
    port: int = 2020
    timeout: float = 10.0

class DirectDBConfig(BaseModel):
    enabled: bool = False
    host_template: str = "{shard}.rebalancer-postgres.{domain}"
    port: int = 5432
    user: str = "postgres"
    dbname: str = "moray"
    connect_timeout: int = 10
    keepalives_idle: int = 30

class OutputConfig(BaseModel):
    directory: str = "."
    file: Optional[str] = None
    object_id_only: bool = False
    full_object: bool = False
    overwrite: bool = False

class DBConfig(BaseModel):
    path: str = "data/sharkspotter.db"
    journal_mode: str = "WAL"
    synchronous: str = "NORMAL"

class SpotterConfig(BaseModel):
    domain: str
    sharks: List[str] = Field(default_factory=list)
    mode: Literal["sharks", "duplicates"] = "sharks"
    min_copies: Optional[int] = None
    detect_duplicates: bool = True
    skip_validation: bool = False
    scan: ScanConfig = ScanConfig()
    shards: ShardRangeConfig = ShardRangeConfig()
    concurrency: ConcurrencyConfig = ConcurrencyConfig()
    retry: RetryConfig = RetryConfig()
    rpc: RpcConfig = RpcConfig()
    direct: DirectDBConfig = DirectDBConfig()
    output: OutputConfig = OutputConfig()
    db: DBConfig = DBConfig()

    @field_validator("domain")
    @classmethod
    def _check_domain(cls, value: str) -> str:
        value = value.strip()
        if not value or not _DOMAIN_RE.match(value):
            raise ValueError(f"invalid domain {value!r}")
        return value

    @field_validator("sharks")
    @classmethod
    def _strip_sharks(cls, value: List[str]) -> List[str]:
        sharks = [s.strip() for s in value if s and s.strip()]
        # keep the first occurrence of each shark
        return list(dict.fromkeys(sharks))

    @model_validator(mode="after")
    def _check_consistency(self) -> "SpotterConfig":
        if self.mode == "sharks" and not self.sharks:
            raise ValueError("at least one shark is required")
        if self.scan.chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        if self.scan.begin < 0:
            raise ValueError("begin must not be negative")
        if self.scan.end is not None and self.scan.end <= self.scan.begin:
            raise ValueError("end must be greater than begin")
        if self.scan.id_name not in INDEX_COLUMNS:
            raise ValueError(f"id_name must be one of {', '.join(INDEX_COLUMNS)}")
        if self.shards.min_shard < 0 or self.shards.min_shard > self.shards.max_shard:
            raise ValueError("min_shard must be between 0 and max_shard")
        if self.concurrency.max_threads is not None and self.concurrency.max_threads < 1:
            raise ValueError("max_threads must be at least 1")
        if self.concurrency.max_threads is not None and not self.concurrency.multithreaded:
            raise ValueError("max_threads requires multithreaded")
        if self.output.object_id_only and self.output.full_object:
            raise ValueError("object_id_only and full_object are mutually exclusive")
        if self.min_copies is not None and self.min_copies < 1:
            raise ValueError("min_copies must be at least 1")
        if self.retry.attempts < 1:
            raise ValueError("retry attempts must be at least 1")
        return self

    @property
    def shard_numbers(self) -> List[int]:
        return list(range(self.shards.min_shard, self.shards.max_shard + 1))

    @property
    def worker_count(self) -> int:
        if not self.concurrency.multithreaded:
            return 1
        return self.concurrency.max_threads or len(self.shard_numbers)


def build_config(data: Dict[str, Any]) -> SpotterConfig:
    try:
        return SpotterConfig(**data)
    except pydantic.ValidationError as e:
        problems = "; ".join(err.get("msg", str(err)) for err in e.errors())
        raise ConfigError(f"Invalid configuration: {problems}") from e

def read_config_data(path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read configuration {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration {path} must be a mapping")
    return data

def load_config(path: Path) -> SpotterConfig:
    return build_config(read_config_data(path))
