from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from moodcircle.config import get_settings, reset_settings_cache
from moodcircle.logging import get_logger
from moodcircle.service.auth import AuthService
from moodcircle.service.email import EmailService
from moodcircle.storage.memory import MemoryStore
from moodcircle.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for safe logging.

    Example: postgresql://app:hunter2@db:5432/moodcircle -> postgresql://app:***@db:5432/moodcircle
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if port:
        netloc = f"{netloc}:{port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Wires the concrete stores and email transport into the auth service."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore]
            if self.settings.use_memory_store:
                # Test mode keeps state purely in memory so runs never share a state file
                fs_root = None if self.settings.test_mode else self.settings.shared_fs_root
                self.store = MemoryStore(fs_root=fs_root)
            else:
                self.store = PostgresStore(self.settings.database_url)
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            timeout_seconds=self.settings.email_send_timeout_seconds,
        )
        self.auth = AuthService(
            otp_store=self.store,
            identity_store=self.store,
            token_store=self.store,
            email_sender=self.email,
            settings=self.settings,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            email_configured=self.email.is_configured,
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked fast path returns an existing
    runtime, the locked slow path guards creation.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
