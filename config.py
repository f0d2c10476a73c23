"""
Configuration for the Pre-Trade Onboarding service.

Values come from environment variables (a local .env file is loaded first) so
secrets stay out of the repository.
"""

import os
from datetime import timedelta, timezone

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = 'false') -> bool:
    return os.environ.get(name, default).lower() == 'true'


class Config:
    """Default application configuration, read once at import time"""

    SECRET_KEY = os.environ.get('SECRET_KEY', os.urandom(24))

    # Demo mode - gateways log instead of calling Google Drive / SMTP
    DEMO_MODE = _env_bool('DEMO_MODE')

    # Google Drive document library
    GDRIVE_SERVICE_ACCOUNT_FILE = os.environ.get('GDRIVE_SERVICE_ACCOUNT_FILE', '')
    GDRIVE_TOKEN_PATH = os.path.expanduser(
        os.environ.get('GDRIVE_TOKEN_PATH', '~/.config/onboarding/gdrive-token.json')
    )
    GDRIVE_TOKEN = os.environ.get('GDRIVE_TOKEN', '')
    GDRIVE_CREDENTIALS_PATH = os.path.expanduser(
        os.environ.get('GDRIVE_CREDENTIALS_PATH', '~/.config/onboarding/gdrive-credentials.json')
    )
    GDRIVE_SHARED_DRIVE_ID = os.environ.get('GDRIVE_SHARED_DRIVE_ID', '')
    GDRIVE_LIBRARY_NAME = os.environ.get('GDRIVE_LIBRARY_NAME', 'Gold Pre-Trade Clients')
    GDRIVE_SITE_URL = os.environ.get('GDRIVE_SITE_URL', 'https://drive.google.com/drive')

    # SMTP notification
    SMTP_HOST = os.environ.get('SMTP_HOST', '')
    SMTP_PORT = int(os.environ.get('SMTP_PORT', '587'))
    SMTP_USER = os.environ.get('SMTP_USER', '')
    SMTP_PASSWORD = os.environ.get('SMTP_PASSWORD', '')
    SMTP_FROM = os.environ.get('SMTP_FROM', 'Pre-Trade Applications <noreply@example.com>')
    SMTP_USE_TLS = _env_bool('SMTP_USE_TLS', 'true')
    NOTIFICATION_APPROVER_EMAIL = os.environ.get('NOTIFICATION_APPROVER_EMAIL', '')

    # Public URL used to build approval links
    BASE_URL = os.environ.get('BASE_URL', 'http://localhost:5000')

    # Submission handling
    UPLOAD_WORKERS = int(os.environ.get('UPLOAD_WORKERS', '4'))
    MAX_FILE_SIZE = int(os.environ.get('MAX_FILE_SIZE', str(10 * 1024 * 1024)))  # 10MB
    MAX_CONTENT_LENGTH = int(os.environ.get('MAX_CONTENT_LENGTH', str(64 * 1024 * 1024)))
    UPLOAD_TMP_DIR = os.environ.get('UPLOAD_TMP_DIR', '')

    # Documents
    DISPLAY_UTC_OFFSET_HOURS = float(os.environ.get('DISPLAY_UTC_OFFSET_HOURS', '2'))
    PDF_LOGO_PATH = os.environ.get(
        'PDF_LOGO_PATH',
        os.path.join(os.path.dirname(os.path.abspath(__file__)), 'static', 'logo.png')
    )

    CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*')


# Variables whose presence (never value) is reported by /api/diagnostics
REQUIRED_ENV_VARS = [
    'GDRIVE_SERVICE_ACCOUNT_FILE',
    'GDRIVE_TOKEN_PATH',
    'GDRIVE_LIBRARY_NAME',
    'SMTP_HOST',
    'SMTP_USER',
    'SMTP_PASSWORD',
    'NOTIFICATION_APPROVER_EMAIL',
    'BASE_URL',
]


def display_timezone(settings) -> timezone:
    """Fixed-offset zone used for human-facing dates in emails and PDFs"""
    hours = float(settings.get('DISPLAY_UTC_OFFSET_HOURS', 0))
    return timezone(timedelta(hours=hours))
