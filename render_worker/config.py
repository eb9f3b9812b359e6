import os
from typing import Optional

class Settings:
    """Application settings"""
    def __init__(self):
        self.app_name: str = os.getenv("APP_NAME", "FFmpeg Render Worker")
        self.app_version: str = os.getenv("APP_VERSION", "1.0.0")
        self.debug: bool = os.getenv("DEBUG", "false").lower() == "true"
        self.host: str = os.getenv("HOST", "0.0.0.0")
        self.port: int = int(os.getenv("PORT", "3000"))

        # Logging settings
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO")

        # Development settings
        cors_origins_str = os.getenv("CORS_ORIGINS", '["http://localhost:3000", "http://localhost:8080"]')
        try:
            import json
            self.cors_origins = json.loads(cors_origins_str) if cors_origins_str.startswith('[') else ["*"]
        except (json.JSONDecodeError, ValueError):
            self.cors_origins = ["*"]

        # Admission settings; an empty API key disables the check
        self.api_key: Optional[str] = os.getenv("API_KEY") or None
        self.queue_capacity: int = int(os.getenv("QUEUE_CAPACITY", "100"))

        # Worker pool settings
        self.max_concurrency: int = int(os.getenv("MAX_CONCURRENCY", str(os.cpu_count() or 1)))
        self.max_attempts: int = int(os.getenv("MAX_ATTEMPTS", "3"))
        self.step_timeout_seconds: float = float(os.getenv("STEP_TIMEOUT_SECONDS", "600"))
        self.backoff_base_seconds: float = float(os.getenv("BACKOFF_BASE_SECONDS", "1"))
        self.backoff_cap_seconds: float = float(os.getenv("BACKOFF_CAP_SECONDS", "30"))
        self.recovery_mode: str = os.getenv("RECOVERY_MODE", "resume").lower()

        # Job store settings
        self.job_store: str = os.getenv("JOB_STORE", "sqlite").lower()
        self.db_path: str = os.getenv("DB_PATH", "render_worker.db")
        self.retention_days: int = int(os.getenv("RETENTION_DAYS", "30"))

        # Step settings
        self.step_mode: str = os.getenv("STEP_MODE", "simulate").lower()
        self.simulated_step_scale: float = float(os.getenv("SIMULATED_STEP_SCALE", "1.0"))
        self.work_dir: str = os.getenv("WORK_DIR", "/tmp/render_worker")
        self.output_dir: str = os.getenv("OUTPUT_DIR", "/tmp/render_worker/output")
        self.ffmpeg_bin: str = os.getenv("FFMPEG_BIN", "ffmpeg")

        # Notification settings
        self.notify_webhook_url: Optional[str] = os.getenv("NOTIFY_WEBHOOK_URL") or None
        self.notify_max_attempts: int = int(os.getenv("NOTIFY_MAX_ATTEMPTS", "5"))
        self.notify_timeout_seconds: float = float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "10"))

# Global settings instance
settings = Settings()
