from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    # Environment setting
    ENVIRONMENT: str = Field(
        "development", description="Environment: development, testing, production"
    )
    DEBUG: bool = Field(False)
    LOG_LEVEL: str = Field("INFO")

    # Database settings
    DB_HOST: str = Field("localhost")
    DB_PORT: int = Field(5432)
    DB_USER: str = Field("")
    DB_PASSWORD: str = Field("")
    DB_NAME: str = Field("dental_treatments")
    DB_DRIVER: str = Field("postgresql+asyncpg")
    DB_POOL_SIZE: int = Field(20)
    DB_MAX_OVERFLOW: int = Field(10)

    SQLITE_MODE: bool = False

    # Treatment records
    TREATMENT_ID_PREFIX: str = Field("TRT", description="Prefix of generated IDs")
    TREATMENT_ID_MAX_RETRIES: int = Field(
        5, description="Attempts at assigning a sequence ID before giving up"
    )
    DEFAULT_QUERY_LIMIT: int = Field(50)

    @property
    def POSTGRESQL_DATABASE_URL(self) -> str:
        return (
            f"{self.DB_DRIVER}://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )

    @property
    def SQLITE_DATABASE_URL(self) -> str:
        return f"sqlite+aiosqlite:///{self.DB_NAME}.db"

    @property
    def DATABASE_URL(self) -> str:
        return (
            self.SQLITE_DATABASE_URL
            if self.SQLITE_MODE
            else self.POSTGRESQL_DATABASE_URL
        )

    @field_validator("LOG_LEVEL")
    def validate_log_level(cls, v: str) -> str:
        return v.upper()

    @field_validator("TREATMENT_ID_PREFIX")
    def validate_prefix(cls, v: str) -> str:
        if not v or not v.isalpha():
            raise ValueError("TREATMENT_ID_PREFIX must be alphabetic")
        return v.upper()

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


settings = Settings()
