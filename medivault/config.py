import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()


def _database_url() -> str:
    if os.getenv("DATABASE_URL"):
        return os.getenv("DATABASE_URL")
    # Check if we're in testing mode
    if os.getenv("TESTING") == "True":
        return "sqlite+aiosqlite:///./test.db"
    POSTGRES_USER = os.getenv("POSTGRES_USER", "postgres")
    POSTGRES_PASSWORD = os.getenv("POSTGRES_PASSWORD", "postgres")
    POSTGRES_DB = os.getenv("POSTGRES_DB", "medivault")
    POSTGRES_HOST = os.getenv("POSTGRES_HOST", "db")
    return f"postgresql+asyncpg://{POSTGRES_USER}:{POSTGRES_PASSWORD}@{POSTGRES_HOST}/{POSTGRES_DB}"


class Settings:
    SQLALCHEMY_DATABASE_URL = _database_url()
    SQL_ECHO = os.getenv("SQL_ECHO", "False") == "True"

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Cost factor for bcrypt; 10 matches the rounds the web client was built against
    BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "10"))

    UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", "./uploads"))
    MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
    ALLOWED_CONTENT_TYPES = frozenset(
        t.strip()
        for t in os.getenv(
            "ALLOWED_CONTENT_TYPES",
            "application/pdf,image/jpeg,image/png,text/plain",
        ).split(",")
        if t.strip()
    )


settings = Settings()
