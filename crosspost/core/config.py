from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Crosspost Scheduler"
    app_env: str = "development"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "crosspost"
    postgres_user: str = "crosspost"
    postgres_password: str = "crosspost"

    redis_host: str = "localhost"
    redis_port: int = 6379

    database_url: str | None = None
    redis_url: str | None = None
    frontend_origin: str = "http://localhost:3000"
    additional_frontend_origins: str = ""
    worker_heartbeat_key: str = "worker:heartbeat"
    worker_heartbeat_ttl_seconds: int = 45

    jwt_secret_key: str = "change_this_in_production"
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 60
    token_encryption_key: str | None = None

    public_app_url: str = "http://localhost:3000"
    public_api_url: str = "http://localhost:8000"
    oauth_callback_path: str = "/oauth/callback"
    dashboard_accounts_path: str = "/dashboard/social-accounts"
    oauth_http_timeout_seconds: float = 20.0

    account_error_threshold: int = 5
    account_refresh_lock_ttl_seconds: int = 60

    dispatcher_interval_seconds: float = 30.0
    dispatcher_batch_size: int = 200
    dispatcher_max_concurrency: int = 5
    dispatcher_lease_seconds: int = 300
    dispatcher_publish_timeout_seconds: float = 240.0
    oauth_state_cleanup_interval_seconds: float = 3600.0
    platform_client_bindings: str = ""

    twitter_client_id: str | None = None
    twitter_client_secret: str | None = None
    twitter_oauth_scope: str = "tweet.read tweet.write users.read offline.access"

    linkedin_client_id: str | None = None
    linkedin_client_secret: str | None = None
    linkedin_oauth_scope: str = "openid profile w_member_social"

    instagram_client_id: str | None = None
    instagram_client_secret: str | None = None
    instagram_oauth_scope: str = "instagram_basic instagram_content_publish"

    facebook_client_id: str | None = None
    facebook_client_secret: str | None = None
    facebook_oauth_scope: str = "pages_manage_posts pages_read_engagement"

    tiktok_client_id: str | None = None
    tiktok_client_secret: str | None = None
    tiktok_oauth_scope: str = "user.info.basic video.publish"

    @property
    def cors_allowed_origins(self) -> list[str]:
        origins = [self.frontend_origin.strip(), self.public_app_url.strip()]
        if self.additional_frontend_origins.strip():
            origins.extend(
                [value.strip() for value in self.additional_frontend_origins.split(",") if value.strip()]
            )
        unique: list[str] = []
        for origin in origins:
            if origin and origin not in unique:
                unique.append(origin)
        return unique

    @property
    def oauth_callback_url(self) -> str:
        return f"{self.public_api_url.rstrip('/')}{self.oauth_callback_path}"

    @property
    def dashboard_accounts_url(self) -> str:
        return f"{self.public_app_url.rstrip('/')}{self.dashboard_accounts_path}"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def sqlalchemy_database_uri(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def cache_redis_url(self) -> str:
        if self.redis_url:
            return self.redis_url
        return f"redis://{self.redis_host}:{self.redis_port}/0"


settings = Settings()
