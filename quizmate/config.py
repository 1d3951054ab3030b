import os
from pathlib import Path

# Base directory
BASE_DIR = Path(__file__).resolve().parent.parent

# Database
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE_DIR}/quizmate.db")

# Security
SESSION_COOKIE_NAME = "session_token"
SESSION_EXPIRE_DAYS = 7

# Question service (start-competition / generate-quiz / explain functions)
QUESTION_SERVICE_URL = os.getenv("QUESTION_SERVICE_URL", "http://localhost:54321/functions/v1")
QUESTION_SERVICE_KEY = os.getenv("QUESTION_SERVICE_KEY", "")
QUESTION_SERVICE_TIMEOUT = float(os.getenv("QUESTION_SERVICE_TIMEOUT", "60"))

# Competitions
COMPETITION_CODE_LENGTH = 6
DEFAULT_MAX_PARTICIPANTS = 100
MIN_PARTICIPANTS_TO_START = 2
MAX_CHAT_MESSAGE_LENGTH = 500

# Step reconciliation polling
RECONCILE_INTERVAL_SECONDS = float(os.getenv("RECONCILE_INTERVAL_SECONDS", "5"))

# Saved solo quiz sessions older than this are discarded (24 hours)
QUIZ_SESSION_MAX_AGE_SECONDS = 24 * 60 * 60

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
