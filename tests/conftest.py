"""pytest fixtures for Nero backend tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- postgres_container: Session-scoped testcontainer PostgreSQL (default when Docker is reachable)
- session_factory / session / uow_factory: Fresh schema per test (SQLite file without Docker)
- upstream: Fake NanoBanana API and image CDN behind httpx.MockTransport
- settings / http_client / service / reconciler: Wired generation service
- make_user / make_task: Row factories
"""

import os

os.environ.setdefault("APP_ENV", "test")

import asyncio  # noqa: E402
import json  # noqa: E402
from typing import AsyncGenerator  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

import nero.models  # noqa: E402,F401
from nero.core.config import Settings  # noqa: E402
from nero.core.database import setup_db_session  # noqa: E402
from nero.models.generated_image import GeneratedImage  # noqa: E402
from nero.models.task import GenerationTask, TaskKind, TaskStatus  # noqa: E402
from nero.models.user import User  # noqa: E402
from nero.services.generation.service import create_generation_service  # noqa: E402
from nero.uow import create_uow_factory  # noqa: E402

PROVIDER_BASE_URL = "https://provider.test"
CDN_HOST = "cdn.test"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def docker_available() -> bool:
    """Return True if a Docker daemon answers on the default socket."""
    try:
        import docker

        client = docker.from_env()
        try:
            return bool(client.ping())
        finally:
            client.close()
    except Exception:
        return False


# NERO_TEST_POSTGRES=1 forces the container, 0 forces SQLite
_POSTGRES_OVERRIDE = os.environ.get("NERO_TEST_POSTGRES")
if _POSTGRES_OVERRIDE in ("0", "1"):
    USE_POSTGRES = _POSTGRES_OVERRIDE == "1"
else:
    USE_POSTGRES = docker_available()


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest.fixture(scope="session")
def postgres_container():
    """Provide session-scoped PostgreSQL container (when Docker is reachable)."""
    if not USE_POSTGRES:
        yield None
        return

    from testcontainers.postgres import PostgresContainer

    with PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="test_nero",
    ).with_bind_ports(5432, None) as container:
        yield container


@pytest.fixture
def db_url(postgres_container, tmp_path) -> str:
    if postgres_container is not None:
        return postgres_container.get_connection_url(driver="psycopg")
    return f"sqlite+aiosqlite:///{tmp_path / 'nero_test.db'}"


@pytest_asyncio.fixture
async def session_factory(db_url) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory bound to a freshly created schema.

    Tables are created with SQLModel metadata before the test and dropped after it.
    """
    factory = setup_db_session(db_url, pool_size=10)

    async with factory() as bootstrap:
        engine = bootstrap.bind

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield factory

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Function-scoped database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def uow_factory(session_factory):
    """Function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


class FakeUpstream:
    """In-process NanoBanana API and image CDN.

    Provider tasks are kept in `statuses` as record-info `data` objects; CDN
    images are served from `images`. Every request is recorded.
    """

    def __init__(self):
        self.submissions: list[dict] = []
        self.statuses: dict[str, dict] = {}
        self.images: dict[str, tuple[bytes, str]] = {}
        self.downloads: list[str] = []
        self.status_calls: list[str] = []
        self.download_delay = 0.0
        self.download_status = 200
        self.provider_error: Exception | None = None
        self.next_task_number = 1

    def add_image(self, path: str, data: bytes = PNG_BYTES, content_type: str = "image/png"):
        self.images[path] = (data, content_type)
        return f"https://{CDN_HOST}{path}"

    def set_status(self, task_id: str, flag: int, result_url: str | None = None, error=None):
        data: dict = {"taskId": task_id, "successFlag": flag}
        if result_url:
            data["response"] = {"resultImageUrl": result_url}
        if error:
            data["errorMessage"] = error
        self.statuses[task_id] = data

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == CDN_HOST:
            return await self._serve_image(request)

        if self.provider_error is not None:
            raise self.provider_error

        if request.url.path == "/api/v1/nanobanana/generate":
            body = json.loads(request.content)
            self.submissions.append(body)
            task_id = f"task-{self.next_task_number}"
            self.next_task_number += 1
            self.set_status(task_id, 0)
            return httpx.Response(
                200, json={"code": 200, "msg": "success", "data": {"taskId": task_id}}
            )

        if request.url.path == "/api/v1/nanobanana/record-info":
            task_id = request.url.params["taskId"]
            self.status_calls.append(task_id)
            data = self.statuses.get(task_id)
            if data is None:
                return httpx.Response(200, json={"code": 404, "msg": "task not found"})
            return httpx.Response(200, json={"code": 200, "msg": "success", "data": data})

        return httpx.Response(404, text="not found")

    async def _serve_image(self, request: httpx.Request) -> httpx.Response:
        self.downloads.append(str(request.url))
        if self.download_delay:
            await asyncio.sleep(self.download_delay)
        if self.download_status != 200:
            return httpx.Response(self.download_status, text="upstream error")

        image = self.images.get(request.url.path)
        if image is None:
            return httpx.Response(404, text="no such image")
        data, content_type = image
        return httpx.Response(200, content=data, headers={"content-type": content_type})


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def settings(tmp_path, db_url) -> Settings:
    """Test settings: short claim waits, uploads under tmp_path."""
    return Settings(
        _env_file=None,  # type: ignore[call-arg]
        APP_ENV="test",
        DATABASE_URL=db_url,
        NANOBANANA_API_KEY="test-api-key",
        NANOBANANA_BASE_URL=PROVIDER_BASE_URL,
        NANOBANANA_WEBHOOK_SECRET="test-webhook-secret",
        JWT_SECRET_KEY="test-jwt-secret",
        API_BASE_URL="https://nero.test",
        UPLOADS_DIR=str(tmp_path / "uploads"),
        CLAIM_WAIT_SECONDS=5,
        CLAIM_POLL_INTERVAL_SECONDS=0.02,
        MAX_MATERIALIZATION_ATTEMPTS=3,
        GENERATION_COST=1,
    )


@pytest_asyncio.fixture
async def http_client(upstream) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler)) as client:
        yield client


@pytest.fixture
def service(settings, uow_factory, http_client):
    return create_generation_service(settings, uow_factory, http_client)


@pytest.fixture
def reconciler(service):
    return service.reconciler


@pytest.fixture
def make_user(uow_factory):
    """Create and persist a user."""

    async def _make_user(stars: int = 10, subscription: str = "free") -> User:
        async with await uow_factory() as uow:
            return await uow.users.add(User(stars=stars, subscription=subscription))

    return _make_user


@pytest.fixture
def make_task(uow_factory):
    """Create a task and its image record as submission would."""

    async def _make_task(
        owner: User,
        task_id: str = "task-abc",
        status: TaskStatus = TaskStatus.PENDING,
        cost: int = 1,
        template_id: str | None = None,
    ) -> GenerationTask:
        async with await uow_factory() as uow:
            task = await uow.tasks.add(
                GenerationTask(
                    task_id=task_id,
                    owner_id=owner.id,
                    kind=TaskKind.TEXT_TO_IMAGE,
                    status=status,
                    prompt="a red fox in the snow",
                    cost=cost,
                    template_id=template_id,
                )
            )
            await uow.images.add(
                GeneratedImage(
                    owner_id=owner.id,
                    task_id=task_id,
                    prompt="a red fox in the snow",
                    template_id=template_id,
                )
            )
        return task

    return _make_task
