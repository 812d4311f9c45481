"""
Django settings for the kbchat backend.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = os.getenv('SECRET_KEY', 'django-insecure-dev-key-change-in-production')

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = os.getenv('DEBUG', 'False').lower() in ('true', '1', 'yes')

ALLOWED_HOSTS = [
    h.strip() for h in os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1,testserver').split(',')
]

# Application definition
INSTALLED_APPS = [
    'daphne',  # ASGI server for Channels
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'channels',
    'rest_framework',
    'apps.authn',
    'apps.docs',
    'apps.indexing',
    'apps.chat',
    'apps.rag',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = []

ASGI_APPLICATION = 'config.asgi.application'

# Database
# Using environment variable for database URL
DATABASE_URL = os.getenv('DATABASE_URL', '')
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': BASE_DIR / 'db.sqlite3',
    }
}
if DATABASE_URL:
    import re
    match = re.match(
        r'postgres(?:ql)?://(?P<user>[^:]+):(?P<password>[^@]+)@(?P<host>[^:]+):(?P<port>\d+)/(?P<name>.+)',
        DATABASE_URL
    )
    if match:
        DATABASES = {
            'default': {
                'ENGINE': 'django.db.backends.postgresql',
                'NAME': match.group('name'),
                'USER': match.group('user'),
                'PASSWORD': match.group('password'),
                'HOST': match.group('host'),
                'PORT': match.group('port'),
            }
        }

# Password validation (minimal for API-only backend)
AUTH_PASSWORD_VALIDATORS = []

# Internationalization
LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# Default primary key field type
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# =============================================================================
# Django REST Framework
# =============================================================================
REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [],
    'DEFAULT_PERMISSION_CLASSES': [],
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
    'UNAUTHENTICATED_USER': None,
}

# =============================================================================
# Authentication (OIDC bearer tokens)
# =============================================================================
AUTH_ISSUER = os.getenv('AUTH_ISSUER', 'http://localhost/realms/kbchat')
AUTH_JWKS_URL = os.getenv('AUTH_JWKS_URL', f'{AUTH_ISSUER}/protocol/openid-connect/certs')
AUTH_AUDIENCE = os.getenv('AUTH_AUDIENCE', 'kbchat-frontend')

# Additional accepted issuers (e.g. internal + browser-facing hostnames)
AUTH_VALID_ISSUERS = [AUTH_ISSUER] + [
    i.strip() for i in os.getenv('AUTH_EXTRA_ISSUERS', '').split(',') if i.strip()
]

# When set, tokens are verified with HS256 against this secret instead of JWKS
AUTH_JWT_SECRET = os.getenv('AUTH_JWT_SECRET', '')

# JWKS cache TTL in seconds (10 minutes default)
AUTH_JWKS_CACHE_TTL = int(os.getenv('AUTH_JWKS_CACHE_TTL', '600'))

# Role required for knowledge-base administration endpoints
ADMIN_ROLE = os.getenv('ADMIN_ROLE', 'admin')

# =============================================================================
# Redis / Channels (WebSocket ingestion progress)
# =============================================================================
REDIS_URL = os.getenv('REDIS_URL', 'redis://redis:6379/0')

CHANNEL_LAYER_BACKEND = os.getenv('CHANNEL_LAYER_BACKEND', 'redis').lower()
if CHANNEL_LAYER_BACKEND == 'memory':
    CHANNEL_LAYERS = {
        'default': {
            'BACKEND': 'channels.layers.InMemoryChannelLayer',
        },
    }
else:
    CHANNEL_LAYERS = {
        'default': {
            'BACKEND': 'channels_redis.core.RedisChannelLayer',
            'CONFIG': {
                'hosts': [REDIS_URL],
            },
        },
    }

# =============================================================================
# Embeddings
# =============================================================================
# Must match the dimension of kb_embeddings.vector and of client-side query vectors
EMBEDDING_MODEL_ID = os.getenv('EMBEDDING_MODEL_ID', 'sentence-transformers/all-MiniLM-L6-v2')
EMBEDDING_DIMENSION = 384
EMBEDDING_BATCH_SIZE = int(os.getenv('EMBEDDING_BATCH_SIZE', '5'))
EMBEDDING_TIMEOUT = float(os.getenv('EMBEDDING_TIMEOUT', '60'))
EMBEDDING_DEVICE = os.getenv('EMBEDDING_DEVICE', '')  # '' = auto-detect

# =============================================================================
# Chunking / Ingestion
# =============================================================================
CHUNK_SIZE = int(os.getenv('CHUNK_SIZE', '1200'))
CHUNK_OVERLAP = int(os.getenv('CHUNK_OVERLAP', '150'))

# Below this many extracted characters a PDF is treated as scanned (image-only)
MIN_EXTRACTED_CHARS = int(os.getenv('MIN_EXTRACTED_CHARS', '50'))

# Documents ingested in parallel by the upload endpoint
INGESTION_WORKERS = int(os.getenv('INGESTION_WORKERS', '2'))

# =============================================================================
# Retrieval / Evidence gate
# =============================================================================
RETRIEVAL_MATCH_COUNT = int(os.getenv('RETRIEVAL_MATCH_COUNT', '6'))
RETRIEVAL_THRESHOLD = float(os.getenv('RETRIEVAL_THRESHOLD', '0.2'))
CHAT_EVIDENCE_THRESHOLD = float(os.getenv('CHAT_EVIDENCE_THRESHOLD', '0.2'))

# =============================================================================
# Chat rate limiting
# =============================================================================
# 'memory' (single instance) or 'redis' (shared across instances)
RATE_LIMIT_BACKEND = os.getenv('RATE_LIMIT_BACKEND', 'memory').lower()
CHAT_RATE_LIMIT_REQUESTS = int(os.getenv('CHAT_RATE_LIMIT_REQUESTS', '20'))
CHAT_RATE_LIMIT_WINDOW = int(os.getenv('CHAT_RATE_LIMIT_WINDOW', '60'))

# =============================================================================
# Generative model
# =============================================================================
# "gemini" (default), "ollama" or "openai"
LLM_PROVIDER = os.getenv('LLM_PROVIDER', 'gemini')

GEMINI_API_KEY = os.getenv('GEMINI_API_KEY', os.getenv('GOOGLE_API_KEY', ''))
GEMINI_MODEL = os.getenv('GEMINI_MODEL', 'gemini-2.5-flash')
GEMINI_TIMEOUT = int(os.getenv('GEMINI_TIMEOUT', '120'))

OLLAMA_BASE_URL = os.getenv('OLLAMA_BASE_URL', 'http://ollama:11434')
OLLAMA_CHAT_MODEL = os.getenv('OLLAMA_CHAT_MODEL', 'gemma:7b')
OLLAMA_CHAT_TIMEOUT = int(os.getenv('OLLAMA_CHAT_TIMEOUT', '600'))  # 10 min

OPENAI_API_KEY = os.getenv('OPENAI_API_KEY', '')
OPENAI_BASE_URL = os.getenv('OPENAI_BASE_URL', 'https://api.openai.com/v1')
OPENAI_MODEL = os.getenv('OPENAI_MODEL', 'gpt-4o-mini')
OPENAI_TIMEOUT = int(os.getenv('OPENAI_TIMEOUT', '120'))

# Low for factuality
LLM_TEMPERATURE = float(os.getenv('LLM_TEMPERATURE', '0.1'))
LLM_MAX_TOKENS = int(os.getenv('LLM_MAX_TOKENS', '1024'))

# Name the assistant uses for itself in prompts and canned answers
ASSISTANT_NAME = os.getenv('ASSISTANT_NAME', 'Knowledge Base Assistant')

# =============================================================================
# File Upload Configuration
# =============================================================================
# Root directory for uploaded files
UPLOAD_ROOT = Path(os.getenv('UPLOAD_ROOT', '/data/uploads'))

# Maximum file size in bytes (50MB default)
MAX_UPLOAD_SIZE = int(os.getenv('MAX_UPLOAD_SIZE', 50 * 1024 * 1024))

# Allowed file extensions
ALLOWED_EXTENSIONS = ['.pdf', '.txt', '.md', '.markdown']

# =============================================================================
# Logging
# =============================================================================
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {message}',
            'style': '{',
        },
        'json': {
            'format': '%(message)s',  # Audit logs are already JSON
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
        'audit': {
            'class': 'logging.StreamHandler',
            'formatter': 'json',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO',
    },
    'loggers': {
        'apps.authn': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
        'apps.docs': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
        'apps.chat': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
        'apps.indexing': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
        'apps.rag': {
            'handlers': ['console'],
            'level': 'DEBUG',
            'propagate': False,
        },
        'audit': {
            'handlers': ['audit'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}
