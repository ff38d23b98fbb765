from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    COHERE_API_KEY: str | None = None
    COHERE_MODEL: str = "embed-english-v3.0"
    EMBEDDING_DIM: int = 1024

    STORE_BACKEND: Literal["memory", "file", "redis"] = "file"
    STORE_DIR: str = "data/vector_stores"
    REDIS_URL: str = "redis://localhost:6379/0"
    TEMPORAL_ADDRESS: str = "localhost:7233"
    LOG_LEVEL: str = "INFO"

    # Index defaults (overridden per store by StoreConfig / tune())
    LSH_NUM_HASH_TABLES: int = 16
    LSH_NUM_HASH_FUNCTIONS: int = 8
    LSH_MIN_DOCUMENTS: int = 100
    DEFAULT_NUM_CLUSTERS: int = 128
    KMEANS_MAX_ITERATIONS: int = 50
    KMEANS_TOLERANCE: float = 1e-6
    TOP_CLUSTERS_TO_SEARCH: int = 10

    AUTO_REBUILD_THRESHOLD: int = 1000
    LARGE_BATCH_SIZE: int = 50
    MIN_DOCS_FOR_TUNING: int = 100
    ENABLE_LSH: bool = True
    ENABLE_CLUSTERING: bool = True
    ENABLE_AUTO_TUNE: bool = True
    BACKGROUND_REBUILD: bool = True
    RANDOM_SEED: Optional[int] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
