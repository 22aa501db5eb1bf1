import os
import log
from dotenv import load_dotenv

# Load .env file into environment
load_dotenv()


class Config:
    def __init__(self):
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./experimentation.db")
        self.log_level = os.getenv("LOG_LEVEL", default="INFO")
        self.log_file = os.getenv("LOG_FILE", "experiment_service.log")
        self.celery_broker_url = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/1")
        self.celery_backend_url = os.getenv("CELERY_BACKEND_URL", "redis://localhost:6379/1")

        # Per-user event log retention (most recent events kept)
        self.event_log_max_length = int(os.getenv("EVENT_LOG_MAX_LENGTH", 200))
        # Adapter-side retries for idempotent writes that lose a version race
        self.max_assignment_retries = int(os.getenv("MAX_ASSIGNMENT_RETRIES", 3))

        # Call setup_logging when the application starts
        log.setup_logging(self.log_level, self.log_file)

    def __repr__(self):
        return (f"<Settings database_url={self.database_url} loglevel={self.log_level}, "
                f"broker_url:{self.celery_broker_url}, backend_url:{self.celery_backend_url}>")

config = Config()
