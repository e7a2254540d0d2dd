import os
from dotenv import load_dotenv

load_dotenv()

def _as_bool(name, default=False):
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in ("1", "true", "yes", "y", "on")

def _as_int(name, default):
    try:
        return int(str(os.getenv(name, default)).strip())
    except (TypeError, ValueError):
        return default

def _database_url():
    url = os.environ.get('DATABASE_URL')
    if url and url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev-secret-key')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Database (None = sqlite file in the instance folder)
    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
    }

    # Public quiz token (itsdangerous)
    PUBLIC_TOKEN_MAX_AGE = _as_int('PUBLIC_TOKEN_MAX_AGE', 3600)

    # Auth
    JWT_EXPIRATION_DAYS = _as_int('JWT_EXPIRATION_DAYS', 7)
    OTP_TTL_MINUTES = _as_int('OTP_TTL_MINUTES', 5)
    OTP_LENGTH = _as_int('OTP_LENGTH', 6)
    OTP_MAX_ATTEMPTS = _as_int('OTP_MAX_ATTEMPTS', 5)

    # Bootstrap admin, created on first start when both are set
    SEED_ADMIN_EMAIL = os.environ.get('SEED_ADMIN_EMAIL')
    SEED_ADMIN_PASSWORD = os.environ.get('SEED_ADMIN_PASSWORD')
    SEED_ADMIN_PHONE = os.environ.get('SEED_ADMIN_PHONE', '5500000000000')

    # WhatsApp (Evolution API). The Integration row wins over these.
    EVOLUTION_API_URL = os.environ.get('EVOLUTION_API_URL', '')
    EVOLUTION_API_KEY = os.environ.get('EVOLUTION_API_KEY', '')
    EVOLUTION_SYSTEM_INSTANCE = os.environ.get('EVOLUTION_SYSTEM_INSTANCE', 'quizlead')
    WHATSAPP_DRY_RUN = _as_bool('WHATSAPP_DRY_RUN', True)

    # Scheduled jobs (Vercel cron / external scheduler)
    CRON_SECRET = os.environ.get('CRON_SECRET', '')
