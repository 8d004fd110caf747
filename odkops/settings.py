"""Django settings for the ODK form operations project.

The project has no web surface: Django provides configuration, the
``manage.py`` command line used to run each pipeline step and the test
runner.  Every external integration (KoboToolbox, GitHub releases and
OneDrive) is configured from environment variables so the same checkout
can run on a workstation or in CI.  Where appropriate, sensible defaults
have been chosen so the pipeline runs out of the box with SQLite as the
(unused) database backend.
"""

from __future__ import annotations

import os
import warnings
from pathlib import Path

from django.core.exceptions import ImproperlyConfigured

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# Load environment variables from a local .env file for development setups.
def load_env_file(path: Path) -> None:
    if not path.exists():
        return

    for line in path.read_text().splitlines():
        if not line or line.strip().startswith("#"):
            continue

        if "=" not in line:
            continue

        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


# Prefer a local .env file but fall back to .env.sample when the project is
# first checked out.  The sample values are insecure and must be overridden
# for real deployments.
env_path = BASE_DIR / ".env"
sample_env_path = BASE_DIR / ".env.sample"

if env_path.exists():
    load_env_file(env_path)
elif sample_env_path.exists():
    warnings.warn(
        ".env not found; using values from .env.sample. Create a .env file to "
        "override these defaults.",
        RuntimeWarning,
        stacklevel=2,
    )
    load_env_file(sample_env_path)


def env_required(name: str) -> str:
    """Fetch a required environment variable or raise a helpful error."""

    value = os.getenv(name)
    if not value:
        raise ImproperlyConfigured(
            f"Set the {name} environment variable (see .env.sample for defaults)."
        )
    return value


def env_flag(name: str, default: str = 'True') -> bool:
    return os.getenv(name, default).lower() not in ('false', '0', 'no')


# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = env_required("DJANGO_SECRET_KEY")

DEBUG = os.getenv("DJANGO_DEBUG", "False").lower() in ("true", "1", "yes")

ALLOWED_HOSTS: list[str] = []


# Application definition
INSTALLED_APPS = [
    'pipeline',
]

# Database
# The pipeline owns no persisted state; SQLite only satisfies Django's
# start-up checks.
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.getenv('PIPELINE_DB_PATH', str(BASE_DIR / 'db.sqlite3')),
    }
}

# Internationalization
LANGUAGE_CODE = 'en-us'

TIME_ZONE = os.getenv('PIPELINE_TIME_ZONE', 'Indian/Mahe')

USE_I18N = False

USE_TZ = True

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'pipeline': {
            'format': '%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'pipeline',
        },
    },
    'loggers': {
        'pipeline': {
            'handlers': ['console'],
            'level': os.getenv('PIPELINE_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
}


# ---------------------------------------------------------------------------
# KoboToolbox
# ---------------------------------------------------------------------------

# ``KOBOTOOLBOX_URL`` selects the Kobo server (EU by default).  The token is
# read here once and threaded through the services as an explicit argument.
KOBO_BASE_URL = os.getenv('KOBOTOOLBOX_URL', 'https://eu.kobotoolbox.org')
KOBO_API_BASE = KOBO_BASE_URL.rstrip('/') + '/api/v2'
KOBO_TOKEN = os.getenv('KOBOTOOLBOX_TOKEN', '')

# Request timeout (seconds) and TLS configuration when contacting the Kobo
# API.
KOBO_HTTP_TIMEOUT = int(os.getenv('KOBO_HTTP_TIMEOUT', '60'))
KOBO_VERIFY_TLS = env_flag('KOBO_VERIFY_TLS')
KOBO_TLS_CERT = os.getenv('KOBO_TLS_CERT') or None


# ---------------------------------------------------------------------------
# GitHub releases
# ---------------------------------------------------------------------------

GITHUB_API_BASE = os.getenv('GITHUB_API_BASE', 'https://api.github.com')
GITHUB_UPLOADS_BASE = os.getenv('GITHUB_UPLOADS_BASE', 'https://uploads.github.com')
GITHUB_TOKEN = os.getenv('GITHUB_TOKEN', os.getenv('GITHUB_PAT', ''))
# ``owner/repo``; when empty the repository is read from ``git remote -v``.
GITHUB_REPOSITORY = os.getenv('GITHUB_REPOSITORY') or None
RELEASE_START = int(os.getenv('RELEASE_START', '1'))
RELEASE_BODY = os.getenv('RELEASE_BODY', 'Form release')


# ---------------------------------------------------------------------------
# OneDrive (Microsoft Graph)
# ---------------------------------------------------------------------------

ONEDRIVE_API_BASE = os.getenv('ONEDRIVE_API_BASE', 'https://graph.microsoft.com/v1.0/me/drive')
ONEDRIVE_ACCESS_TOKEN = os.getenv('ONEDRIVE_ACCESS_TOKEN', '')
ONEDRIVE_HTTP_TIMEOUT = int(os.getenv('ONEDRIVE_HTTP_TIMEOUT', '120'))


# ---------------------------------------------------------------------------
# Local forms layout
# ---------------------------------------------------------------------------

FORMS_ROOT = Path(os.getenv('FORMS_ROOT', 'forms'))
FORMS_ARCHIVE_DIR = Path(os.getenv('FORMS_ARCHIVE_DIR', str(FORMS_ROOT / 'archive')))
FORMS_RELEASE_DIR = Path(os.getenv('FORMS_RELEASE_DIR', str(FORMS_ROOT / 'release')))
FORMS_MEDIA_DIR = Path(os.getenv('FORMS_MEDIA_DIR', str(FORMS_RELEASE_DIR / 'media')))


# ---------------------------------------------------------------------------
# Study parameters used by the declared build targets
# ---------------------------------------------------------------------------

PATIENT_ID_SEED = int(os.getenv('PATIENT_ID_SEED', '1977'))
PATIENT_ID_COUNT = int(os.getenv('PATIENT_ID_COUNT', '400'))
PATIENT_LIST_LANGUAGE = 'Creole (cpf)'
PATIENT_LIST_FILTER_LABEL = 'enumerator'
# Eight nurses, fifty patients each.
PATIENT_LIST_ENUMERATORS = [f'nurse{i:02d}' for i in range(1, 9)]
PATIENT_LIST_PER_ENUMERATOR = 50

KOBO_FORMS = {
    'patient': os.getenv('KOBO_PATIENT_FORM', 'Oncology patient questionnaire'),
    'hcw': os.getenv('KOBO_HCW_FORM', 'Oncology health care worker questionnaire'),
}
KOBO_FORM_FILES = {
    'patient': 'onco_patient_questionnaire.xlsx',
    'hcw': 'onco_hcw_questionnaire.xlsx',
}

ONEDRIVE_FORM_PATHS = [
    'sc_onco_facility_study/questionnaire/xlsform/onco_patient_questionnaire.xlsx',
    'sc_onco_facility_study/questionnaire/xlsform/onco_hcw_questionnaire.xlsx',
]
ONEDRIVE_MEDIA_PATH = 'sc_onco_facility_study/questionnaire/xlsform/media'
ONEDRIVE_PATIENT_LIST_PATH = (
    'sc_onco_facility_study/Pilot/'
    'List of Cancer Patients on Chemotherapy March 2025_anonymised.xlsx'
)
