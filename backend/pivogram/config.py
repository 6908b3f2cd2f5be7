from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./pivogram.db"
    jwt_secret_key: str = "change-me"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 30
    stun_servers: str = "stun:stun.l.google.com:19302"
    turn_uri: str | None = None
    turn_username: str | None = None
    turn_password: str | None = None
    cors_origins: str = "http://localhost:3000"
    admin_usernames: str = "admin"

    # chat core
    max_history: int = 500
    replay_limit: int = 100
    default_room: str = "general"
    presence_grace_seconds: float = 5.0
    call_record_ttl_seconds: float = 60.0
    legacy_messages_file: str | None = None
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False

    def admins(self) -> set[str]:
        return {u.strip() for u in self.admin_usernames.split(",") if u.strip()}

settings = Settings()
