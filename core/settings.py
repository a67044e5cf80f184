from environs import Env
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

env = Env()
env.read_env(BASE_DIR / '.env')

APP_ENV = env.str('APP_ENV', 'local')

SECRET_KEY = env.str('APP_SECRET_KEY', 'change-me')

DEBUG = APP_ENV != 'production'

ALLOWED_HOSTS = env.list('ALLOWED_HOSTS', default=['*'])

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'x402wf.apps.X402WorkflowConfig',
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
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

ASGI_APPLICATION = 'core.asgi.application'


DATABASE_ENGINE = env.str('DATABASE_ENGINE', 'django.db.backends.sqlite3')

if DATABASE_ENGINE.endswith('sqlite3'):
    DATABASES = {
        'default': {
            'ENGINE': DATABASE_ENGINE,
            'NAME': env.str('SQLITE_PATH', str(BASE_DIR / 'db.sqlite3')),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': DATABASE_ENGINE,
            'NAME': env.str('PGSQL_DATABASE', 'x402_facilitator'),
            'USER': env.str('PGSQL_USER', 'postgres'),
            'PASSWORD': env.str('PGSQL_PASSWORD', 'mysecretpassword'),
            'HOST': env.str('PGSQL_HOST', 'localhost'),
            'PORT': env.int('PGSQL_PORT', 5432),
        }
    }


AUTH_PASSWORD_VALIDATORS = [
    {
        'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator',
    },
]


LANGUAGE_CODE = 'en-us'

TIME_ZONE = 'UTC'

USE_I18N = True

USE_TZ = True


STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'static'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Chain reads
X402_RPC_URL = env.str('X402_RPC_URL', '')
X402_RPC_URLS = env.dict('X402_RPC_URLS', default={})
X402_RPC_TIMEOUT_SECONDS = env.float('X402_RPC_TIMEOUT_SECONDS', 10)
X402_DOMAIN_SEPARATOR_SOURCE = env.str('X402_DOMAIN_SEPARATOR_SOURCE', 'contract')
X402_EXPIRY_MARGIN_SECONDS = env.int('X402_EXPIRY_MARGIN_SECONDS', 6)

# Settlement workflows
WORKFLOW_STORE = env.str('WORKFLOW_STORE', 'memory')
WORKFLOW_NODE_URL = env.str('WORKFLOW_NODE_URL', 'http://localhost:8080')
WORKFLOW_DISPATCH_METHOD = env.str('WORKFLOW_DISPATCH_METHOD', 'krnl_executeWorkflow')
WORKFLOW_STATUS_METHOD = env.str('WORKFLOW_STATUS_METHOD', 'krnl_getWorkflowStatus')
WORKFLOW_CONFIG_METHOD = env.str('WORKFLOW_CONFIG_METHOD', 'krnl_getConfig')
WORKFLOW_REQUEST_TIMEOUT_SECONDS = env.float('WORKFLOW_REQUEST_TIMEOUT_SECONDS', 60)
WORKFLOW_POLL_INTERVAL_SECONDS = env.float('WORKFLOW_POLL_INTERVAL_SECONDS', 2)
WORKFLOW_POLL_TIMEOUT_SECONDS = env.float('WORKFLOW_POLL_TIMEOUT_SECONDS', 60)
SETTLE_WAIT_TIMEOUT_SECONDS = env.float('SETTLE_WAIT_TIMEOUT_SECONDS', 30)
WORKFLOW_MAX_AGE_SECONDS = env.float('WORKFLOW_MAX_AGE_SECONDS', 3600)
WORKFLOW_SWEEP_INTERVAL_SECONDS = env.float('WORKFLOW_SWEEP_INTERVAL_SECONDS', 300)
WORKFLOW_ATTESTOR_IMAGE = env.str(
    'WORKFLOW_ATTESTOR_IMAGE', 'ghcr.io/krnl-labs/attestor-x402:latest')
WORKFLOW_TARGET_CONTRACT = env.str(
    'WORKFLOW_TARGET_CONTRACT', '0x0000000000000000000000000000000000000000')
WORKFLOW_DEFAULT_DELEGATE = env.str('WORKFLOW_DEFAULT_DELEGATE', '')
WORKFLOW_BUNDLER_URL = env.str('WORKFLOW_BUNDLER_URL', '')
WORKFLOW_PAYMASTER_URL = env.str('WORKFLOW_PAYMASTER_URL', '')
WORKFLOW_INTERNAL_HEADER = env.str('WORKFLOW_INTERNAL_HEADER', 'X-Workflow-Internal')
FACILITATOR_URL = env.str('FACILITATOR_URL', 'http://localhost:8000')
