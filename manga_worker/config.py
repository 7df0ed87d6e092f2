"""
Configuration management for the manga archive worker.

Centralizes all configuration loading from environment variables
and provides type-safe access to configuration values.
"""

import os
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field


def _parse_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_int_list(value: str) -> List[int]:
    return [int(item) for item in _parse_list(value)]


@dataclass
class WorkerConfig:
    """Configuration for the manga archive worker"""

    # Storage settings
    STORAGE_TYPE: str = "local"  # local, s3
    STORAGE_CONFIG: Dict[str, Any] = None

    # Metadata store settings
    METADATA_STORE_TYPE: str = "postgres"  # postgres, memory
    METADATA_STORE_CONFIG: Dict[str, Any] = None

    # Image settings
    ACCEPTED_IMAGE_EXTENSIONS: List[str] = field(
        default_factory=lambda: ["jpg", "jpeg", "png", "webp", "gif", "bmp"]
    )
    THUMBNAIL_SIZES: List[int] = field(default_factory=lambda: [128, 256, 512])
    THUMBNAIL_FORMAT: str = "webp"
    THUMBNAIL_QUALITY: int = 85
    THUMBNAIL_WORKERS: int = 4
    COVER_MARKERS: List[str] = field(
        default_factory=lambda: ["cover", "front", "portada", "capa"]
    )

    # Pool settings
    MAX_CONCURRENT_WORKERS: int = 2
    MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_MS: int = 1000
    RETRY_MAX_DELAY_MS: int = 60000
    ATTEMPT_TIMEOUT_SEC: float = 300.0
    MAX_UNREADABLE_RATIO: float = 0.5
    SHUTDOWN_GRACE_SEC: float = 30.0

    # Directories
    DATA_DIR: str = "/app/data"
    SCRATCH_DIR: Optional[str] = None
    THUMBNAILS_DIR: str = "/app/data/thumbnails"
    CACHE_DIR: str = "/app/data/cache"
    ENABLE_RESULT_CACHE: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "/app/data/worker"

    # HTTP server
    ENABLE_HTTP_SERVER: bool = False
    HTTP_PORT: int = 8000

    def __post_init__(self):
        if self.STORAGE_CONFIG is None:
            self.STORAGE_CONFIG = {}
        if self.METADATA_STORE_CONFIG is None:
            self.METADATA_STORE_CONFIG = {}

    @classmethod
    def from_env(cls) -> 'WorkerConfig':
        """Load configuration from environment variables"""
        config = cls()

        # Storage configuration
        config.STORAGE_TYPE = os.getenv("STORAGE_TYPE", "local")
        config.STORAGE_CONFIG = cls._parse_storage_config()

        # Metadata store configuration
        config.METADATA_STORE_TYPE = os.getenv("METADATA_STORE_TYPE", "postgres")
        config.METADATA_STORE_CONFIG = cls._parse_metadata_store_config()

        # Image settings
        config.ACCEPTED_IMAGE_EXTENSIONS = [
            ext.lower().lstrip(".")
            for ext in _parse_list(os.getenv("ACCEPTED_IMAGE_EXTENSIONS", "jpg,jpeg,png,webp,gif,bmp"))
        ]
        config.THUMBNAIL_SIZES = _parse_int_list(os.getenv("THUMBNAIL_SIZES", "128,256,512"))
        config.THUMBNAIL_FORMAT = os.getenv("THUMBNAIL_FORMAT", "webp").lower()
        config.THUMBNAIL_QUALITY = int(os.getenv("THUMBNAIL_QUALITY", "85"))
        config.THUMBNAIL_WORKERS = int(os.getenv("THUMBNAIL_WORKERS", "4"))
        config.COVER_MARKERS = [
            marker.lower() for marker in _parse_list(os.getenv("COVER_MARKERS", "cover,front,portada,capa"))
        ]

        # Pool settings
        config.MAX_CONCURRENT_WORKERS = int(os.getenv("MAX_CONCURRENT_WORKERS", "2"))
        config.MAX_ATTEMPTS = int(os.getenv("WORKER_MAX_ATTEMPTS", "3"))
        config.RETRY_BASE_DELAY_MS = int(os.getenv("RETRY_BASE_DELAY_MS", "1000"))
        config.RETRY_MAX_DELAY_MS = int(os.getenv("RETRY_MAX_DELAY_MS", "60000"))
        config.ATTEMPT_TIMEOUT_SEC = float(os.getenv("ATTEMPT_TIMEOUT_SEC", "300"))
        config.MAX_UNREADABLE_RATIO = float(os.getenv("MAX_UNREADABLE_RATIO", "0.5"))
        config.SHUTDOWN_GRACE_SEC = float(os.getenv("SHUTDOWN_GRACE_SEC", "30"))

        # Directories
        config.DATA_DIR = os.getenv("DATA_DIR", "/app/data")
        config.SCRATCH_DIR = os.getenv("SCRATCH_DIR") or None
        config.THUMBNAILS_DIR = os.getenv("THUMBNAILS_DIR", os.path.join(config.DATA_DIR, "thumbnails"))
        config.CACHE_DIR = os.getenv("CACHE_DIR", os.path.join(config.DATA_DIR, "cache"))
        config.ENABLE_RESULT_CACHE = os.getenv("ENABLE_RESULT_CACHE", "false").lower() == "true"

        # Logging
        config.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
        config.LOG_DIR = os.getenv("LOG_DIR", os.path.join(config.DATA_DIR, "worker"))

        # HTTP server
        config.ENABLE_HTTP_SERVER = os.getenv("WORKER_DEV_HTTP", "false").lower() == "true"
        config.HTTP_PORT = int(os.getenv("WORKER_HTTP_PORT", "8000"))

        return config

    @classmethod
    def _parse_storage_config(cls) -> Dict[str, Any]:
        """Parse file storage specific configuration"""
        storage_type = os.getenv("STORAGE_TYPE", "local")

        if storage_type == "local":
            return {
                "root": os.getenv("STORAGE_ROOT", os.getenv("DATA_DIR", "/app/data")),
            }
        elif storage_type == "s3":
            return {
                "bucket": os.getenv("AWS_S3_BUCKET"),
                "region": os.getenv("AWS_REGION", "us-east-1"),
                "prefix": os.getenv("S3_PREFIX", "manga/"),
                "spool_max_bytes": int(os.getenv("S3_SPOOL_MAX_BYTES", str(32 * 1024 * 1024))),
            }
        else:
            return {}

    @classmethod
    def _parse_metadata_store_config(cls) -> Dict[str, Any]:
        """Parse metadata store specific configuration"""
        store_type = os.getenv("METADATA_STORE_TYPE", "postgres")

        if store_type == "postgres":
            return {
                "database_url": os.getenv("DATABASE_URL"),
                "connection_pool_size": int(os.getenv("POSTGRES_POOL_SIZE", "5")),
                "connection_timeout": int(os.getenv("POSTGRES_TIMEOUT", "10"))
            }
        else:
            return {}

    def validate(self) -> None:
        """Validate configuration and raise errors for missing or invalid values"""
        required_vars = []

        if self.METADATA_STORE_TYPE == "postgres" and not self.METADATA_STORE_CONFIG.get("database_url"):
            required_vars.append("DATABASE_URL")

        if self.STORAGE_TYPE == "s3" and not self.STORAGE_CONFIG.get("bucket"):
            required_vars.append("AWS_S3_BUCKET")

        if required_vars:
            raise ValueError(f"Missing required environment variables: {', '.join(required_vars)}")

        problems = []
        if self.STORAGE_TYPE not in ("local", "s3"):
            problems.append(f"STORAGE_TYPE must be local or s3, got {self.STORAGE_TYPE}")
        if self.METADATA_STORE_TYPE not in ("postgres", "memory"):
            problems.append(f"METADATA_STORE_TYPE must be postgres or memory, got {self.METADATA_STORE_TYPE}")
        if not self.ACCEPTED_IMAGE_EXTENSIONS:
            problems.append("ACCEPTED_IMAGE_EXTENSIONS must not be empty")
        if not self.THUMBNAIL_SIZES or any(size <= 0 for size in self.THUMBNAIL_SIZES):
            problems.append("THUMBNAIL_SIZES must be a non-empty list of positive integers")
        if self.THUMBNAIL_FORMAT not in ("webp", "jpeg", "png"):
            problems.append(f"THUMBNAIL_FORMAT must be webp, jpeg or png, got {self.THUMBNAIL_FORMAT}")
        if self.MAX_CONCURRENT_WORKERS < 1:
            problems.append("MAX_CONCURRENT_WORKERS must be at least 1")
        if self.MAX_ATTEMPTS < 1:
            problems.append("MAX_ATTEMPTS must be at least 1")
        if self.RETRY_BASE_DELAY_MS < 0 or self.RETRY_MAX_DELAY_MS < self.RETRY_BASE_DELAY_MS:
            problems.append("RETRY_MAX_DELAY_MS must be >= RETRY_BASE_DELAY_MS >= 0")
        if not 0 < self.MAX_UNREADABLE_RATIO <= 1:
            problems.append("MAX_UNREADABLE_RATIO must be in (0, 1]")

        if problems:
            raise ValueError(f"Invalid configuration: {'; '.join(problems)}")

    def get_adapter_class_names(self) -> tuple[str, str]:
        """Get the class names for file storage and metadata store adapters"""
        storage_map = {
            "local": "LocalFileStorageAdapter",
            "s3": "S3FileStorageAdapter",
        }

        metadata_store_map = {
            "postgres": "PostgresMetadataStoreAdapter",
            "memory": "InMemoryMetadataStore",
        }

        storage_class = storage_map.get(self.STORAGE_TYPE, "LocalFileStorageAdapter")
        metadata_store_class = metadata_store_map.get(self.METADATA_STORE_TYPE, "PostgresMetadataStoreAdapter")

        return storage_class, metadata_store_class

    def retry_delay_sec(self, attempt: int) -> float:
        """Exponential backoff for the given attempt number, capped"""
        delay_ms = min(self.RETRY_BASE_DELAY_MS * (2 ** attempt), self.RETRY_MAX_DELAY_MS)
        return delay_ms / 1000.0
