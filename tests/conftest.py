import base64
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionvault_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ENCRYPTION_KEY", "base64:" + base64.b64encode(b"k" * 32).decode())
os.environ.setdefault("IDENTITY_CONTEXT", "sessionvault-tests")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionvault.service.delegation import DelegationManager  # noqa: E402
from sessionvault.service.identity import IdentityTokenCodec  # noqa: E402
from sessionvault.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessionvault.service.scopes import DELEGATE_PERMISSION, ScopeRegistry  # noqa: E402
from sessionvault.service.sessions import SessionLifecycleManager  # noqa: E402
from sessionvault.storage.memory import MemoryStore  # noqa: E402

APP_SCOPE = "app-scope-key-000000000000000001"
PARTNER_SCOPE = "partner-scope-key-00000000000002"
OTHER_SCOPE = "other-scope-key-0000000000000003"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def codec():
    return IdentityTokenCodec(b"\x01" * 32, "sessionvault-tests")


@pytest.fixture
def manager(memory_store, codec):
    return SessionLifecycleManager(
        memory_store, codec, session_duration_seconds=1800, code_validity_seconds=300
    )


@pytest.fixture
def scopes():
    return ScopeRegistry(
        {
            APP_SCOPE: {"name": "app", "permissions": [DELEGATE_PERMISSION]},
            PARTNER_SCOPE: {"name": "partner", "permissions": []},
            OTHER_SCOPE: {"name": "other", "permissions": []},
        }
    )


@pytest.fixture
def delegation(manager, codec, scopes):
    return DelegationManager(manager, codec, scopes, duration_seconds=1800)


@pytest.fixture
def validated_session(manager):
    """A validated APP_SCOPE session for identity ``alice@example.com``."""

    session = manager.create(APP_SCOPE)
    manager.assign_identity(session.id, "alice@example.com").unwrap()
    return manager.validate(session.id, session.code).unwrap()
