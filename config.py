"""
Settings for the library portal.

Values come from the environment, with a ``.env`` file in the project
directory loaded first so local development needs no exported variables.
"""
import os
import secrets

from dotenv import load_dotenv

basedir = os.path.abspath(os.path.dirname(__file__))
load_dotenv(os.path.join(basedir, '.env'))


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        # Sessions will not survive a restart with a generated key.
        SECRET_KEY = secrets.token_hex(32)

    # Hosted backend (tables, procedures, storage and auth)
    BACKEND_URL = os.environ.get('BACKEND_URL', '').rstrip('/')
    BACKEND_ANON_KEY = os.environ.get('BACKEND_ANON_KEY', '')
    BACKEND_TIMEOUT = float(os.environ.get('BACKEND_TIMEOUT', '10'))
    STORAGE_BUCKET = os.environ.get('STORAGE_BUCKET', 'books')
    COVER_BUCKET = os.environ.get('COVER_BUCKET', 'images')
    SIGNED_URL_TTL = int(os.environ.get('SIGNED_URL_TTL', '300'))

    # OpenAI-compatible generation API
    AI_BASE_URL = os.environ.get('AI_BASE_URL', 'https://api.a4f.co/v1').rstrip('/')
    AI_API_KEY = os.environ.get('AI_API_KEY', '')
    AI_TEXT_MODEL = os.environ.get('AI_TEXT_MODEL', 'provider-5/grok-4-0709')
    AI_IMAGE_MODEL = os.environ.get('AI_IMAGE_MODEL', 'provider-4/imagen-4')
    AI_TIMEOUT = float(os.environ.get('AI_TIMEOUT', '60'))

    LATE_FEE_PER_DAY = int(os.environ.get('LATE_FEE_PER_DAY', '5'))
    WTF_CSRF_ENABLED = True
    WTF_CSRF_TIME_LIMIT = 3600

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
