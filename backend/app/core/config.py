# app/core/config.py
import os
from urllib.parse import quote_plus

from dotenv import load_dotenv


def str_to_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def merge_unique(items: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for v in items:
        if v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out


class Settings:
    def __init__(self) -> None:
        # Only load .env for local/dev. In prod, env vars come from the service config.
        self.ENV = os.getenv("ENV", "dev").strip().lower()  # dev | prod
        if self.ENV != "prod":
            load_dotenv()

        # ----------------------------
        # Database
        # ----------------------------
        self.DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
        self.DB_HOST = os.getenv("DB_HOST", "")
        self.DB_PORT = os.getenv("DB_PORT", "5432")
        self.DB_NAME = os.getenv("DB_NAME", "")
        self.DB_APP_USER = os.getenv("DB_APP_USER", "")
        self.DB_APP_PASSWORD = os.getenv("DB_APP_PASSWORD", "")
        self.DB_MIGRATOR_USER = os.getenv("DB_MIGRATOR_USER", "")
        self.DB_MIGRATOR_PASSWORD = os.getenv("DB_MIGRATOR_PASSWORD", "")
        self.DB_SSLMODE = os.getenv("DB_SSLMODE", "require").strip().lower()

        # ----------------------------
        # CORS
        # ----------------------------
        dev_defaults = [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]

        cors_from_env = parse_csv(os.getenv("CORS_ORIGINS"))
        if self.ENV == "prod":
            self.CORS_ORIGINS = merge_unique(cors_from_env)
        else:
            self.CORS_ORIGINS = merge_unique(cors_from_env + dev_defaults)

        # ----------------------------
        # Verification tokens
        # ----------------------------
        # Mixed into the storage hash; without it a leaked table could be brute-forced offline.
        self.TOKEN_SECRET = os.getenv("TOKEN_SECRET", "")
        self.VERIFICATION_TOKEN_TTL_MINUTES = int(os.getenv("VERIFICATION_TOKEN_TTL_MINUTES", "60"))

        self.ISSUANCE_MAX_ATTEMPTS = int(os.getenv("ISSUANCE_MAX_ATTEMPTS", "5"))
        self.ISSUANCE_RETRY_BASE_DELAY_MS = int(os.getenv("ISSUANCE_RETRY_BASE_DELAY_MS", "25"))
        self.ISSUANCE_RETRY_MAX_DELAY_MS = int(os.getenv("ISSUANCE_RETRY_MAX_DELAY_MS", "500"))

        # Dev defaults are local URLs; prod MUST be explicitly configured
        if self.ENV == "prod":
            self.FRONTEND_BASE_URL = os.getenv("FRONTEND_BASE_URL", "").strip().rstrip("/")
        else:
            self.FRONTEND_BASE_URL = os.getenv("FRONTEND_BASE_URL", "http://localhost:3000").strip().rstrip("/")

        # ----------------------------
        # Rate limiting
        # ----------------------------
        self.RATE_LIMIT_ENABLED = str_to_bool(os.getenv("RATE_LIMIT_ENABLED"), default=True)
        self.RATE_LIMIT_BACKEND = os.getenv("RATE_LIMIT_BACKEND", "memory").strip().lower()  # memory | dynamodb
        self.RATE_LIMIT_ISSUANCE_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_ISSUANCE_MAX_REQUESTS", "10"))
        self.RATE_LIMIT_ISSUANCE_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_ISSUANCE_WINDOW_SECONDS", "900"))
        self.RATE_LIMIT_VERIFY_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_VERIFY_MAX_REQUESTS", "20"))
        self.RATE_LIMIT_VERIFY_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_VERIFY_WINDOW_SECONDS", "300"))
        self.DDB_RATE_LIMIT_TABLE = os.getenv("DDB_RATE_LIMIT_TABLE", "")
        self.AWS_REGION = os.getenv("AWS_REGION", "")

        # ----------------------------
        # Email delivery
        # ----------------------------
        self.EMAIL_ENABLED = str_to_bool(os.getenv("EMAIL_ENABLED"), default=False)
        self.EMAIL_PROVIDER = os.getenv("EMAIL_PROVIDER", "resend").strip().lower()
        self.FROM_EMAIL = os.getenv("FROM_EMAIL", "")
        self.RESEND_API_KEY = os.getenv("RESEND_API_KEY", "")

        # SMTP (only relevant if EMAIL_PROVIDER=gmail/smtp)
        self.SMTP_HOST = os.getenv("SMTP_HOST", "")
        self.SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
        self.SMTP_USERNAME = os.getenv("SMTP_USERNAME", "")
        self.SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
        self.SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL", "")
        self.SMTP_USE_TLS = str_to_bool(os.getenv("SMTP_USE_TLS", "true"), default=True)
        self.SMTP_USE_SSL = str_to_bool(os.getenv("SMTP_USE_SSL", "false"), default=False)

        # Final: fail fast in prod
        self._validate_prod()

    def _validate_prod(self) -> None:
        if self.ENV != "prod":
            return

        missing: list[str] = []

        if not self.TOKEN_SECRET:
            missing.append("TOKEN_SECRET")
        if not self.DATABASE_URL:
            if not self.DB_HOST:
                missing.append("DB_HOST")
            if not self.DB_NAME:
                missing.append("DB_NAME")
            if not self.DB_APP_USER:
                missing.append("DB_APP_USER")
            if not self.DB_APP_PASSWORD:
                missing.append("DB_APP_PASSWORD")
            if self.DB_SSLMODE != "require":
                raise RuntimeError("DB_SSLMODE must be 'require' in prod")

        if not self.FRONTEND_BASE_URL:
            missing.append("FRONTEND_BASE_URL")
        if self.FRONTEND_BASE_URL and not self.FRONTEND_BASE_URL.startswith("https://"):
            raise RuntimeError("FRONTEND_BASE_URL should be https://... in prod")

        if self.RATE_LIMIT_ENABLED and self.RATE_LIMIT_BACKEND == "dynamodb":
            if not self.DDB_RATE_LIMIT_TABLE:
                missing.append("DDB_RATE_LIMIT_TABLE")
            if not self.AWS_REGION:
                missing.append("AWS_REGION")

        cors_joined = ",".join(self.CORS_ORIGINS)
        if "localhost" in cors_joined or "127.0.0.1" in cors_joined:
            raise RuntimeError("CORS_ORIGINS contains localhost/dev origins in prod")

        if missing:
            raise RuntimeError(f"Missing required prod env vars: {', '.join(missing)}")

    @property
    def is_prod(self) -> bool:
        return self.ENV == "prod"

    def _build_database_url(self, user: str, password: str) -> str:
        encoded_password = quote_plus(password)
        return (
            f"postgresql+psycopg2://{user}:{encoded_password}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
            f"?sslmode={self.DB_SSLMODE}"
        )

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return self._build_database_url(self.DB_APP_USER, self.DB_APP_PASSWORD)

    @property
    def migrations_database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return self._build_database_url(self.DB_MIGRATOR_USER, self.DB_MIGRATOR_PASSWORD)


settings = Settings()


def require_token_secret() -> None:
    if not settings.TOKEN_SECRET:
        raise RuntimeError("TOKEN_SECRET must be set")
