import asyncio
import inspect
import os
import sys
import tempfile
import uuid
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="ethosync_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Rate limits fall back to the in-process token bucket
os.environ.setdefault("REDIS_URL", "")
# Outbound services are replaced with fakes per test
os.environ.setdefault("GATING_SERVICE_URL", "")
os.environ.setdefault("OLLAMA_URL", "")
os.environ.setdefault("PLATFORM_API_TOKEN", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from ethosync.service.gating import Classified, GatingOutcome  # noqa: E402
from ethosync.service.platform import WorkflowHost  # noqa: E402
from ethosync.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from ethosync.storage.common import PostgresConfig, parse_postgres_url  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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


class FakePlatform:
    """In-process stand-in for the cloud platform API."""

    is_configured = True

    def __init__(self):
        self.runs: Dict[str, Dict[str, Any]] = {}
        self.projects: Dict[str, Dict[str, Any]] = {}
        self.hosts: Dict[str, WorkflowHost] = {}
        self.postgres: Dict[str, PostgresConfig] = {}
        self.job_runs: Dict[str, Dict[str, Any]] = {}
        self.template_calls: List[Dict[str, Any]] = []
        self.project_calls: List[str] = []
        self.job_triggers: List[Dict[str, Any]] = []
        self.template_error: Optional[Exception] = None
        self.project_error: Optional[Exception] = None
        self.run_error: Optional[Exception] = None
        self.trigger_error: Optional[Exception] = None
        self.closed = False

    async def start_template_run(self, arguments):
        await asyncio.sleep(0)
        if self.template_error is not None:
            raise self.template_error
        self.template_calls.append(arguments)
        return {"id": f"run-{len(self.template_calls)}"}

    async def get_template_run(self, run_id):
        if self.run_error is not None:
            raise self.run_error
        return self.runs.get(run_id)

    async def create_project(self, name, description, region):
        if self.project_error is not None:
            raise self.project_error
        self.project_calls.append(name)
        project = {"id": f"proj-manual-{len(self.project_calls)}", "name": name}
        self.projects[project["id"]] = project
        return project

    async def get_project(self, project_id):
        return self.projects.get(project_id)

    async def find_workflow_host(self, project_id):
        return self.hosts.get(project_id)

    async def add_ingress_project(self, target_project_id, project_id):
        return True

    async def set_workflow_service_env(self, project_id, env):
        return True

    async def get_postgres_connection(self, project_id):
        return self.postgres.get(project_id)

    async def get_connection_string(self, project_id):
        return self.postgres.get(project_id)

    async def trigger_job_run(self, project_id, job_id, runtime_environment):
        if self.trigger_error is not None:
            raise self.trigger_error
        self.job_triggers.append(
            {"project_id": project_id, "job_id": job_id, "env": runtime_environment}
        )
        return {"id": f"job-run-{len(self.job_triggers)}"}

    async def get_job_run(self, project_id, job_id, run_id):
        return self.job_runs.get(run_id)

    async def close(self):
        self.closed = True


class FakeWorkflowEngine:
    def __init__(self):
        self.api_key = "n8n_generated_key"
        self.credential_id = "cred-1"
        self.credential_error: Optional[Exception] = None
        self.credential_calls: List[str] = []

    async def create_api_key(self, base_url, email, password, *, fallback=None):
        return self.api_key or fallback

    async def create_postgres_credential(self, base_url, email, password, config, *, name="Tenant Postgres"):
        if self.credential_error is not None:
            raise self.credential_error
        self.credential_calls.append(base_url)
        return self.credential_id


class FakeGating:
    def __init__(self, outcome: Optional[GatingOutcome] = None):
        self.outcome = outcome or Classified(
            routing="good", valence="positive", scores={"alignment": 0.9}
        )
        self.calls: List[Dict[str, Any]] = []

    async def classify(self, user_id, text, database_url, metadata=None, *, session_id=None):
        self.calls.append(
            {
                "user_id": user_id,
                "text": text,
                "database_url": database_url,
                "metadata": metadata,
                "session_id": session_id,
            }
        )
        return self.outcome

    async def close(self):
        return None


class FakeEmbeddings:
    """Deterministic bag-of-letters vectors so similarity is predictable."""

    is_configured = True

    async def embed(self, text):
        lowered = text.lower()
        return [float(lowered.count(ch)) + 0.01 for ch in "aeiourst"]

    async def health_check(self):
        return True

    async def close(self):
        return None


class SpawnRecorder:
    """Collects coroutines handed to ``spawn`` instead of scheduling them."""

    def __init__(self):
        self.spawned: List[tuple] = []

    def __call__(self, coro, name):
        self.spawned.append((name, coro))
        return None

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self.spawned]

    def close_all(self) -> None:
        for _, coro in self.spawned:
            coro.close()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def fakes(runtime):
    ns = SimpleNamespace(
        platform=FakePlatform(),
        workflow=FakeWorkflowEngine(),
        gating=FakeGating(),
        embeddings=FakeEmbeddings(),
        spawn=SpawnRecorder(),
    )
    runtime.use_clients(
        platform=ns.platform,
        workflow=ns.workflow,
        gating=ns.gating,
        embeddings=ns.embeddings,
    )
    runtime.provisioning.spawn = ns.spawn
    runtime.training.spawn = ns.spawn
    yield ns
    ns.spawn.close_all()


@pytest.fixture
def spawn_recorder():
    recorder = SpawnRecorder()
    yield recorder
    recorder.close_all()


@pytest.fixture
def make_user(runtime):
    """Create a tenant account and return it with a bearer header for it."""

    def _make(**fields):
        identity = f"idp_{uuid.uuid4().hex[:12]}"
        user = runtime.store.create_user(identity, f"{identity}@example.com", "Test Person")
        if fields:
            user = runtime.store.update_user(user.id, **fields)
        token = runtime.auth.issue_access_token(identity)
        return user, {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def ready_tenant(runtime, fakes, make_user):
    """A tenant whose backend is deployed and whose database schema exists."""

    def _make(**fields):
        project_id = f"proj-{uuid.uuid4().hex[:8]}"
        dsn = f"postgresql://tenant:pw@db-{project_id}.example:5432/tenantdb"
        fakes.platform.postgres[project_id] = parse_postgres_url(dsn)
        fakes.platform.projects[project_id] = {"id": project_id, "name": f"sunday-{project_id}"}
        values = {
            "project_id": project_id,
            "project_status": "ready",
            "postgres_schema_initialized": True,
            "workflow_url": "https://n8n.example",
            "workflow_encryption_key": "abc123",
        }
        values.update(fields)
        user, headers = make_user(**values)
        tenant_store = runtime.tenant_store(dsn)
        tenant_store.initialize_schema()
        return SimpleNamespace(user=user, headers=headers, store=tenant_store, dsn=dsn)

    return _make
