"""Application configuration."""

from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Environment
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://mcacrm:mcacrm123@db:5432/mcacrm"
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30  # seconds to wait for a pooled connection
    DB_POOL_RECYCLE: int = 1800
    CREATE_TABLES_ON_STARTUP: bool = True

    # CORS
    CORS_ORIGINS: List[str] = ["*"]

    # Twilio SMS
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_PHONE_NUMBER: Optional[str] = None
    TWILIO_API_BASE: str = "https://api.twilio.com"
    SMS_TIMEOUT_SECONDS: float = 15.0

    # S3 document storage
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    AWS_REGION: str = "us-east-1"
    S3_DOCUMENTS_BUCKET: str = "mca-crm-documents"
    S3_PRESIGNED_URL_EXPIRY: int = 3600
    S3_TIMEOUT_SECONDS: int = 30
    MAX_UPLOAD_BYTES: int = 50 * 1024 * 1024

    # Google Document AI (OCR)
    GOOGLE_PROJECT_ID: Optional[str] = None
    DOCUMENT_AI_LOCATION: str = "us"
    DOCUMENT_AI_PROCESSOR_ID: Optional[str] = None
    GOOGLE_CLIENT_ID: Optional[str] = None
    GOOGLE_CLIENT_SECRET: Optional[str] = None
    GOOGLE_REFRESH_TOKEN: Optional[str] = None
    OCR_TIMEOUT_SECONDS: float = 120.0

    # OpenAI
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    FCS_MODEL: str = "gpt-4o"
    AI_CHAT_MAX_TOKENS: int = 1000
    AI_CHAT_TEMPERATURE: float = 0.7
    AI_CHAT_TIMEOUT_SECONDS: float = 30.0
    FCS_LLM_TIMEOUT_SECONDS: float = 90.0

    # FCS report generation
    FCS_MAX_CHARS_PER_DOCUMENT: int = 15000
    FCS_LARGE_DOCUMENT_PAGES: int = 50
    FCS_CHUNK_PAGES: int = 15

    # Lender qualification service
    LENDER_QUALIFICATION_URL: Optional[str] = None
    LENDER_QUALIFICATION_TIMEOUT_SECONDS: float = 30.0

    # Job queue
    FCS_TRIGGER_WINDOW_SECONDS: int = 300
    JOB_LEASE_SECONDS: int = 900
    JOB_SWEEP_INTERVAL_SECONDS: int = 60
    ENABLE_JOB_SWEEPER: bool = True

    # CSV import
    CSV_IMPORT_BATCH_SIZE: int = 500

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
