from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = Field("development", description="development or production")
    api_title: str = Field("Coordena+ API")
    log_level: str = Field("INFO")

    database_url: str = Field("sqlite:///coordena.db")
    redis_url: str = Field("redis://localhost:6379/0")
    celery_task_always_eager: bool = Field(False)

    jwt_secret: str = Field("secret")
    jwt_algorithm: str = Field("HS256")
    access_token_expire_minutes: int = Field(60 * 12)
    bcrypt_rounds: int = Field(12)

    institution_domain: str = Field("estacio.br")
    student_subdomain: str = Field("alunos")
    professor_subdomain: str = Field("professor")

    admin_name: str = Field("Administrador Coordena")
    admin_email: str = Field("admin@admin.estacio.br")
    admin_password: str = Field("change-me")

    cors_origins: str = Field("http://localhost:3000", description="Comma separated")
    rate_limit_enabled: bool = Field(True)
    auth_rate_limit: str = Field("5/minute")

    vapid_public_key: str = Field("")
    vapid_private_key: str = Field("")
    vapid_subject: str = Field("mailto:admin@estacio.br")

    smtp_host: str = Field("")
    smtp_port: int = Field(587)
    smtp_user: str = Field("")
    smtp_password: str = Field("")
    smtp_use_tls: bool = Field(True)
    email_from: str = Field("Coordena+ <no-reply@estacio.br>")

    @property
    def cors_origin_list(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


settings = Settings()


def validate_runtime_config() -> None:
    if len(settings.admin_password.encode("utf-8")) > 72:
        raise RuntimeError("ADMIN_PASSWORD must be at most 72 bytes (bcrypt limit).")
    if settings.app_env.lower() != "production":
        return
    if settings.jwt_secret == "secret":
        raise RuntimeError("JWT_SECRET must be set in production.")
    if settings.admin_password == "change-me":
        raise RuntimeError("ADMIN_PASSWORD must be set in production.")
