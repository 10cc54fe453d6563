"""
Django settings for the storage quota service.

Every deployment-specific value is read from the environment:

    DJANGO_SECRET_KEY, DJANGO_DEBUG, DJANGO_ALLOWED_HOSTS
    QUOTA_DB_ENGINE (sqlite | postgresql), QUOTA_DB_NAME, QUOTA_DB_USER,
    QUOTA_DB_PASSWORD, QUOTA_DB_HOST, QUOTA_DB_PORT
    QUOTA_ENGINE_STRATEGY (pessimistic | optimistic)
    QUOTA_RECONCILIATION_ENABLED, QUOTA_RECONCILIATION_SCHEDULE
    QUOTA_LOG_LEVEL
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'django-insecure-quota-ledger-dev-key')

DEBUG = env_bool('DJANGO_DEBUG', False)

ALLOWED_HOSTS = [h for h in os.environ.get('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',') if h]

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'django_filters',
    'quotas.apps.QuotasConfig',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'core.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'core.wsgi.application'


# Database

if os.environ.get('QUOTA_DB_ENGINE', 'sqlite') == 'postgresql':
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME': os.environ.get('QUOTA_DB_NAME', 'quota_ledger'),
            'USER': os.environ.get('QUOTA_DB_USER', 'postgres'),
            'PASSWORD': os.environ.get('QUOTA_DB_PASSWORD', ''),
            'HOST': os.environ.get('QUOTA_DB_HOST', 'localhost'),
            'PORT': os.environ.get('QUOTA_DB_PORT', '5432'),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': os.environ.get('QUOTA_DB_NAME', str(BASE_DIR / 'db.sqlite3')),
            # SQLite has no row locks; IMMEDIATE serializes writers instead
            'OPTIONS': {'transaction_mode': 'IMMEDIATE', 'timeout': 20},
            # File-backed so concurrent test threads share one database
            'TEST': {'NAME': str(BASE_DIR / 'test_db.sqlite3')},
        }
    }

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'


# Internationalization

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'


# Django REST Framework

REST_FRAMEWORK = {
    'DEFAULT_RENDERER_CLASSES': ['rest_framework.renderers.JSONRenderer'],
    'DEFAULT_PARSER_CLASSES': ['rest_framework.parsers.JSONParser'],
    'DEFAULT_FILTER_BACKENDS': ['django_filters.rest_framework.DjangoFilterBackend'],
    'DEFAULT_PAGINATION_CLASS': 'rest_framework.pagination.PageNumberPagination',
    'PAGE_SIZE': 50,
    'EXCEPTION_HANDLER': 'quotas.exceptions.custom_exception_handler',
}


# Quota engine

QUOTA_ENGINE = {
    'STRATEGY': os.environ.get('QUOTA_ENGINE_STRATEGY', 'pessimistic'),
    'DATABASE': 'default',
    'RETRY': {
        'MAX_ATTEMPTS': 5,
        'BASE_DELAY': 0.05,
        'MULTIPLIER': 2.0,
        'MAX_DELAY': 2.0,
        'JITTER': True,
    },
}

QUOTA_RECONCILIATION = {
    'ENABLED': env_bool('QUOTA_RECONCILIATION_ENABLED', True),
    'SCHEDULE': os.environ.get('QUOTA_RECONCILIATION_SCHEDULE', '0 3 * * *'),
}


# Logging

LOG_LEVEL = os.environ.get('QUOTA_LOG_LEVEL', 'INFO')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING',
    },
    'loggers': {
        'quotas': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
    },
}
