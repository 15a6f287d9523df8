import asyncio
import os
from uuid import uuid4

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-with-enough-length-for-hs256")
os.environ.setdefault("TWITTER_CLIENT_ID", "twitter-client")
os.environ.setdefault("TWITTER_CLIENT_SECRET", "twitter-secret")
os.environ.setdefault("INSTAGRAM_CLIENT_ID", "instagram-client")
os.environ.setdefault("INSTAGRAM_CLIENT_SECRET", "instagram-secret")
os.environ.setdefault("LINKEDIN_CLIENT_ID", "linkedin-client")
os.environ.setdefault("LINKEDIN_CLIENT_SECRET", "linkedin-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from crosspost.core.security import create_access_token
from crosspost.domain import models  # noqa: F401
from crosspost.domain.platform import Platform
from crosspost.infrastructure.cache import redis_client as redis_client_module
from crosspost.infrastructure.cache.redis_client import get_redis
from crosspost.infrastructure.db.base import Base
from crosspost.infrastructure.db.session import get_db, get_session_factory
from crosspost.integrations.platform_clients import (
    BasePlatformClient,
    PlatformProfile,
    PublishResult,
    bind_platform_client,
    reset_platform_clients,
)

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")


class FakeRedis:
    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = str(value)
        return True

    def setex(self, key, ttl, value):
        self.store[key] = str(value)
        return True

    def get(self, key):
        return self.store.get(key)

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    def exists(self, key):
        return int(key in self.store)

    def incrby(self, key, amount=1):
        value = int(self.store.get(key) or 0) + amount
        self.store[key] = str(value)
        return value

    def hincrby(self, key, field, amount=1):
        fields = self.hashes.setdefault(key, {})
        value = int(fields.get(field) or 0) + amount
        fields[field] = str(value)
        return value

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def ping(self):
        return True

    def eval(self, script, numkeys, key, token):
        if self.store.get(key) == token:
            del self.store[key]
            return 1
        return 0


class FakePlatform:
    """Scripted behaviour for one platform; records every publish call."""

    def __init__(self, platform: Platform) -> None:
        self.platform = platform
        self.profile = PlatformProfile(
            platform_user_id=f"{platform.value}-user-1",
            username=f"{platform.value}_handle",
            display_name="Test Account",
            follower_count=42,
        )
        self.profile_error: Exception | None = None
        self.publish_outcome: PublishResult | Exception = PublishResult(
            success=True,
            platform_post_id=f"{platform.value}-post-1",
            platform_post_url=f"https://{platform.value}.example/posts/1",
        )
        self.before_publish = None
        self.publish_delay = 0.0
        self.factory_error: Exception | None = None
        self.publish_calls: list[dict] = []

    def factory(self, *, access_token: str, platform_user_id: str | None = None) -> BasePlatformClient:
        if self.factory_error is not None:
            raise self.factory_error
        return _FakeClient(self, access_token=access_token, platform_user_id=platform_user_id)


class _FakeClient(BasePlatformClient):
    def __init__(self, fake: FakePlatform, *, access_token: str, platform_user_id: str | None = None) -> None:
        super().__init__(access_token=access_token, platform_user_id=platform_user_id)
        self.fake = fake

    def get_profile(self) -> PlatformProfile:
        if self.fake.profile_error is not None:
            raise self.fake.profile_error
        return self.fake.profile

    async def publish_post(self, *, content, media_urls, metadata) -> PublishResult:
        self.fake.publish_calls.append(
            {"content": content, "media_urls": media_urls, "metadata": metadata, "access_token": self.access_token}
        )
        if self.fake.before_publish is not None:
            self.fake.before_publish()
        if self.fake.publish_delay:
            await asyncio.sleep(self.fake.publish_delay)
        if isinstance(self.fake.publish_outcome, Exception):
            raise self.fake.publish_outcome
        return self.fake.publish_outcome


@pytest.fixture
def db_engine():
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(TEST_DATABASE_URL, pool_pre_ping=True)
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as exc:
            pytest.skip(f"Database unavailable for integration tests: {exc}")

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_redis(monkeypatch):
    redis = FakeRedis()
    monkeypatch.setattr(redis_client_module, "get_redis_client", lambda: redis)
    return redis


@pytest.fixture
def platform_clients():
    fakes = {platform: FakePlatform(platform) for platform in Platform}
    for platform, fake in fakes.items():
        bind_platform_client(platform, fake.factory)
    yield fakes
    reset_platform_clients()


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def auth_headers(user_id):
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture
def client(db_session, session_factory, fake_redis):
    from main import app

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: fake_redis
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
