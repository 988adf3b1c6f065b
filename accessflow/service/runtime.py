from __future__ import annotations

import threading
from typing import Optional

from accessflow.config import get_settings, reset_settings_cache
from accessflow.logging import get_logger
from accessflow.service.auth import AuthService
from accessflow.service.email import EmailService, Notifier
from accessflow.service.invitations import InvitationService
from accessflow.service.mfa import MfaEngine
from accessflow.service.recovery import PasswordResetService
from accessflow.service.tokens import TokenIssuer
from accessflow.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, notifier: Optional[Notifier] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            persist_state=self.settings.persist_state,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = MemoryStore(
                fs_root=self.settings.shared_fs_root,
                mfa_encryption_key=self.settings.mfa_encryption_key,
                persist=self.settings.persist_state,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.email = EmailService.from_settings(self.settings)
        # Tests swap in a recording notifier; production sends through SMTP
        self.notifier: Notifier = notifier or self.email
        self.tokens = TokenIssuer(self.settings)
        self.mfa = MfaEngine(self.store, self.tokens, self.notifier, self.settings)
        self.invitations = InvitationService(
            self.store, self.tokens, self.notifier, self.settings
        )
        self.auth = AuthService(self.store, self.tokens, self.mfa, self.settings)
        self.recovery = PasswordResetService(
            self.store, self.tokens, self.notifier, self.settings
        )

        logger.info(
            "runtime_initialized",
            email_configured=self.email.is_configured,
            frontend_url=self.settings.frontend_url,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path once the runtime
    exists, and a second check under the lock during creation.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(notifier: Optional[Notifier] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(notifier=notifier)
        return runtime
