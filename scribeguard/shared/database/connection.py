"""PostgreSQL connectivity for the audit store and metrics repository.

One ConnectionManager is shared by the request path and the escalation
timer threads, so the pool is a psycopg2 ThreadedConnectionPool created
lazily under a lock. Every session carries a statement timeout: a slow
metrics query must fail fast instead of stalling the analytics request.
"""
import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DatabaseConfig:
    """Pool and session settings.

    Production deployments resolve credentials from AWS Secrets Manager
    (DB_SECRET_ARN); development reads them from DB_* variables.
    """
    host: str
    port: int = 5432
    database: str = "scribeguard"
    username: str = ""
    password: str = ""
    min_connections: int = 2
    max_connections: int = 10
    connect_timeout: int = 10
    ssl_mode: str = "require"
    statement_timeout_ms: int = 2000
    application_name: str = "scribeguard"

    def __post_init__(self):
        if self.min_connections < 1 or self.max_connections < self.min_connections:
            raise ValueError(
                f"Invalid pool bounds: min={self.min_connections} max={self.max_connections}"
            )
        if self.statement_timeout_ms < 0:
            raise ValueError("statement_timeout_ms must be >= 0")

    def session_options(self) -> str:
        """libpq `options` string applied to every pooled session."""
        return f"-c statement_timeout={self.statement_timeout_ms}"

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Build config from DB_* environment variables.

        Environment variables:
            DB_HOST, DB_PORT, DB_NAME, DB_USER, DB_PASSWORD
            DB_MIN_CONN / DB_MAX_CONN: Pool bounds (default 2 / 10)
            DB_SSL_MODE: libpq sslmode (default require)
            DB_STATEMENT_TIMEOUT_MS: Per-statement timeout (default 2000)
        """
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "scribeguard"),
            username=os.getenv("DB_USER", ""),
            password=os.getenv("DB_PASSWORD", ""),
            min_connections=int(os.getenv("DB_MIN_CONN", "2")),
            max_connections=int(os.getenv("DB_MAX_CONN", "10")),
            ssl_mode=os.getenv("DB_SSL_MODE", "require"),
            statement_timeout_ms=int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "2000")),
        )

    @classmethod
    def from_secrets_manager(
        cls,
        secret_arn: str,
        region: Optional[str] = None,
    ) -> "DatabaseConfig":
        """Overlay credentials from a Secrets Manager secret onto from_env().

        The secret uses the RDS rotation layout (host, port, dbname,
        username, password); missing keys keep their environment values.
        """
        import boto3

        region = region or os.getenv("AWS_REGION", "us-east-1")
        try:
            client = boto3.client("secretsmanager", region_name=region)
            secret = json.loads(client.get_secret_value(SecretId=secret_arn)["SecretString"])
        except Exception as e:
            logger.error(
                "SECRETS_MANAGER_LOAD_FAILED",
                extra={"error": str(e), "error_type": type(e).__name__, "region": region}
            )
            raise

        base = cls.from_env()
        return replace(
            base,
            host=secret.get("host", base.host),
            port=int(secret.get("port", base.port)),
            database=secret.get("dbname", base.database),
            username=secret.get("username", base.username),
            password=secret.get("password", base.password),
        )

    @classmethod
    def load(cls) -> "DatabaseConfig":
        """Secrets Manager when DB_SECRET_ARN is set, environment otherwise."""
        secret_arn = os.getenv("DB_SECRET_ARN")
        if secret_arn:
            return cls.from_secrets_manager(secret_arn)
        return cls.from_env()


class ConnectionManager:
    """Lazily pooled PostgreSQL connections."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._pool = None
        self._init_lock = threading.Lock()

        logger.info(
            "CONNECTION_MANAGER_CREATED",
            extra={
                "database": config.database,
                "max_connections": config.max_connections,
                "statement_timeout_ms": config.statement_timeout_ms,
            }
        )

    @property
    def initialized(self) -> bool:
        return self._pool is not None

    def initialize(self) -> None:
        """Create the pool once; concurrent callers wait for the first."""
        with self._init_lock:
            if self._pool is not None:
                return

            from psycopg2 import pool

            try:
                self._pool = pool.ThreadedConnectionPool(
                    minconn=self.config.min_connections,
                    maxconn=self.config.max_connections,
                    host=self.config.host,
                    port=self.config.port,
                    dbname=self.config.database,
                    user=self.config.username,
                    password=self.config.password,
                    connect_timeout=self.config.connect_timeout,
                    sslmode=self.config.ssl_mode,
                    application_name=self.config.application_name,
                    options=self.config.session_options(),
                )
            except Exception as e:
                logger.error(
                    "CONNECTION_POOL_INIT_FAILED",
                    extra={"error": str(e), "error_type": type(e).__name__}
                )
                raise

        logger.info(
            "CONNECTION_POOL_INITIALIZED",
            extra={
                "database": self.config.database,
                "min_connections": self.config.min_connections,
            }
        )

    @contextmanager
    def get_connection(self):
        """Borrow a pooled connection; it is returned even on error.

        Usage:
            with manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
        """
        if self._pool is None:
            self.initialize()

        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            self._pool.putconn(conn)

    def health_check(self) -> Dict[str, Any]:
        """Round-trip a trivial query for readiness checks."""
        if self._pool is None:
            return {"status": "not_initialized", "healthy": False}

        started = time.monotonic()
        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()
        except Exception as e:
            logger.error(
                "DATABASE_HEALTH_CHECK_FAILED",
                extra={"error": str(e), "error_type": type(e).__name__}
            )
            return {"status": "error", "healthy": False, "error": str(e)}

        return {
            "status": "connected",
            "healthy": True,
            "database": self.config.database,
            "latency_ms": round((time.monotonic() - started) * 1000, 2),
        }

    def close(self) -> None:
        """Close every pooled connection (application shutdown)."""
        with self._init_lock:
            if self._pool is None:
                return
            self._pool.closeall()
            self._pool = None
        logger.info("CONNECTION_POOL_CLOSED")
