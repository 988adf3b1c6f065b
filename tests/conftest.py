import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="accessflow_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("PERSIST_STATE", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("FRONTEND_URL", "https://app.example.com")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from accessflow.config import Settings  # noqa: E402
from accessflow.service.auth import AuthService  # noqa: E402
from accessflow.service.errors import DeliveryError  # noqa: E402
from accessflow.service.invitations import InvitationService  # noqa: E402
from accessflow.service.mfa import MfaEngine  # noqa: E402
from accessflow.service.passwords import hash_password  # noqa: E402
from accessflow.service.recovery import PasswordResetService  # noqa: E402
from accessflow.service.runtime import reset_runtime_for_tests  # noqa: E402
from accessflow.service.tokens import TokenIssuer  # noqa: E402
from accessflow.storage.memory import MemoryStore  # noqa: E402
from accessflow.storage.models import MfaMethod, Role, UserStatus  # noqa: E402


class RecordingNotifier:
    """Notifier that keeps every message instead of sending it."""

    def __init__(self):
        self.sent = []

    def send(self, to_address, subject, body):
        self.sent.append({"to": to_address, "subject": subject, "body": body})

    def last_for(self, to_address):
        matches = [msg for msg in self.sent if msg["to"] == to_address]
        return matches[-1] if matches else None


class FailingNotifier(RecordingNotifier):
    """Notifier whose every delivery attempt fails."""

    def send(self, to_address, subject, body):
        self.sent.append({"to": to_address, "subject": subject, "body": body})
        raise DeliveryError("smtp unavailable", recipient=to_address)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    runtime = reset_runtime_for_tests(notifier=RecordingNotifier())
    yield runtime
    reset_runtime_for_tests()


@pytest.fixture
def runtime(reset_runtime_state):
    return reset_runtime_state


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        frontend_url="https://app.example.com",
        persist_state=False,
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return FailingNotifier()


@pytest.fixture
def tokens(settings):
    return TokenIssuer(settings)


@pytest.fixture
def mfa(store, tokens, notifier, settings):
    return MfaEngine(store, tokens, notifier, settings)


@pytest.fixture
def invitations(store, tokens, notifier, settings):
    return InvitationService(store, tokens, notifier, settings)


@pytest.fixture
def auth(store, tokens, mfa, settings):
    return AuthService(store, tokens, mfa, settings)


@pytest.fixture
def recovery(store, tokens, notifier, settings):
    return PasswordResetService(store, tokens, notifier, settings)


@pytest.fixture
def make_user(store):
    """Factory creating an active principal with a known password."""

    def _make(
        email,
        role=Role.CLIENT_USER,
        *,
        password="CorrectHorse9!",
        status=UserStatus.ACTIVE,
        mfa_method=MfaMethod.NONE,
        organization_id=None,
    ):
        user = store.create_user(
            email,
            email.split("@")[0].title(),
            hash_password(password),
            role=role,
            status=status,
            organization_id=organization_id,
        )
        if mfa_method is not MfaMethod.NONE:
            user.mfa.method = mfa_method
            user = store.save_user(user)
        return user

    return _make


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
