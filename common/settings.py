import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    service_name: str = os.getenv("SERVICE_NAME", "reconciliation-service")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    jwt_issuer: str = os.getenv("JWT_ISSUER", "reconciliation-admin")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))

    database_url: str = os.getenv("DATABASE_URL", "")
    mysql_user: str = os.getenv("MYSQL_USER", "root")
    mysql_password: str = os.getenv("MYSQL_PASSWORD", "root")
    mysql_host: str = os.getenv("MYSQL_HOST", "mysql")
    mysql_db: str = os.getenv("MYSQL_DB", "reconciliation")
    mysql_port: int = int(os.getenv("MYSQL_PORT", "3306"))
    db_pool_timeout_seconds: int = int(os.getenv("DB_POOL_TIMEOUT_SECONDS", "10"))
    db_connect_timeout_seconds: int = int(os.getenv("DB_CONNECT_TIMEOUT_SECONDS", "5"))
    create_tables: bool = os.getenv("CREATE_TABLES", "true").lower() == "true"

    stripe_secret_key: str = os.getenv("STRIPE_SECRET_KEY", "")
    stripe_webhook_secret: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    stripe_webhook_tolerance_seconds: int = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "300"))
    stripe_timeout_seconds: int = int(os.getenv("STRIPE_TIMEOUT_SECONDS", "10"))

    # Follow-up invoice policy, offsets relative to the class start date
    derive_due_dates_from_start: bool = os.getenv("DERIVE_DUE_DATES_FROM_START", "true").lower() == "true"
    invoice_1_offset_days: int = int(os.getenv("INVOICE_1_OFFSET_DAYS", "-21"))
    invoice_2_offset_days: int = int(os.getenv("INVOICE_2_OFFSET_DAYS", "7"))
    invoice_number_start: int = int(os.getenv("INVOICE_NUMBER_START", "100001"))

    export_filename_prefix: str = os.getenv("EXPORT_FILENAME_PREFIX", "invoices")

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"mysql+mysqlconnector://{self.mysql_user}:{self.mysql_password}"
            f"@{self.mysql_host}:{self.mysql_port}/{self.mysql_db}"
        )

settings = Settings()
