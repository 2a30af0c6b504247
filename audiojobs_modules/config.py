import os
import logging
import importlib
from pathlib import Path
from typing import Any, Mapping, Optional

from dotenv import load_dotenv

# Переменные окружения из .env
load_dotenv()

# Определяем, запущены ли мы в контейнере
IN_CONTAINER = os.path.exists('/app') and os.access('/app', os.W_OK)

if IN_CONTAINER:
    DATA_DIR = Path("/app/data")
else:
    DATA_DIR = Path("./data")
DATA_DIR.mkdir(parents=True, exist_ok=True)

ENVIRONMENT = os.getenv('ENVIRONMENT', 'development').lower()

# Настройка логирования
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(DATA_DIR / 'audiojobs.log'),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

# ===== БАЗА ДАННЫХ (Job Store) =====
if IN_CONTAINER:
    DATABASE_URL = os.getenv('DATABASE_URL', f'sqlite:///{DATA_DIR}/audiojobs.db')
else:
    DATABASE_URL = os.getenv('DATABASE_URL', f'sqlite:///{DATA_DIR.absolute()}/audiojobs.db')

# ===== ОЧЕРЕДЬ =====
AUDIO_QUEUE_NAME = os.getenv('AUDIO_QUEUE_NAME', 'audio-processing-queue')
JOB_MAX_ATTEMPTS = int(os.getenv('JOB_MAX_ATTEMPTS', '3'))
JOB_BACKOFF_BASE_SECONDS = float(os.getenv('JOB_BACKOFF_BASE_SECONDS', '5'))
JOB_BACKOFF_MAX_SECONDS = float(os.getenv('JOB_BACKOFF_MAX_SECONDS', '300'))
JOB_LEASE_TIMEOUT_SECONDS = int(float(os.getenv('JOB_LEASE_TIMEOUT_SECONDS', '600')))
JOB_RETENTION_HOURS = float(os.getenv('JOB_RETENTION_HOURS', '72'))

# ===== ВОРКЕРЫ =====
JOB_POLL_INTERVAL = float(os.getenv('JOB_POLL_INTERVAL', '5'))
JOB_WORKER_CONCURRENCY = int(os.getenv('JOB_WORKER_CONCURRENCY', '2'))
JOB_MAINTENANCE_INTERVAL = float(os.getenv('JOB_MAINTENANCE_INTERVAL', '60'))

# ===== STATUS CACHE =====
STATUS_CACHE_BACKEND = os.getenv('STATUS_CACHE_BACKEND', 'memory').lower()
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379')
STATUS_TTL_SECONDS = int(os.getenv('STATUS_TTL_SECONDS', '0'))

# ===== ОБЪЕКТНОЕ ХРАНИЛИЩЕ =====
STORAGE_BACKEND = os.getenv('STORAGE_BACKEND', 'local').lower()
LOCAL_STORAGE_DIR = Path(os.getenv('LOCAL_STORAGE_DIR', str(DATA_DIR / 'recordings')))
SUPABASE_URL = os.getenv('SUPABASE_URL', '')
SUPABASE_SERVICE_ROLE_KEY = os.getenv('SUPABASE_SERVICE_ROLE_KEY', '')
STORAGE_BUCKET = os.getenv('STORAGE_BUCKET', 'recordings')

# ===== API КЛЮЧИ ДЛЯ AI СЕРВИСОВ =====
DEEPINFRA_API_KEY = os.getenv('DEEPINFRA_API_KEY', '')
DEEPINFRA_TRANSCRIBE_URL = os.getenv(
    'DEEPINFRA_TRANSCRIBE_URL',
    'https://api.deepinfra.com/v1/inference/openai/whisper-large-v3-turbo',
)
OPENROUTER_API_KEY = os.getenv('OPENROUTER_API_KEY', '')
OPENROUTER_MODEL = os.getenv('OPENROUTER_MODEL', 'google/gemini-2.5-flash-lite')
TRANSCRIBE_TIMEOUT_SEC = max(60, int(os.getenv('TRANSCRIBE_TIMEOUT_SEC', '300')))
ANALYSIS_TIMEOUT_SEC = float(os.getenv('ANALYSIS_TIMEOUT_SEC', '120'))

# ===== ОБРАБОТКА АУДИО =====
FFMPEG_TIMEOUT_SEC = float(os.getenv('FFMPEG_TIMEOUT_SEC', '600'))
MAX_FILE_SIZE_MB = int(os.getenv('MAX_FILE_SIZE_MB', '500'))

logger.info("✅ Конфигурация загружена успешно")
logger.info(f"🏠 Режим: {'контейнер' if IN_CONTAINER else 'локальный'}")
logger.info(f"📁 Директория данных: {DATA_DIR}")
logger.info(f"📬 Очередь: {AUDIO_QUEUE_NAME}, попыток: {JOB_MAX_ATTEMPTS}")
logger.info(f"🗂️ Status cache: {STATUS_CACHE_BACKEND}, хранилище: {STORAGE_BACKEND}")


def load_audio_service_overrides() -> Optional[Mapping[str, Any]]:
    """Загрузить переопределения сервисов пайплайна из переменной окружения.

    Ожидается значение формата ``module.path:factory``. Фабрика возвращает mapping
    с ключами fetch/transcode/analyze/persist/notify/cleanup.
    """

    target = os.getenv("AUDIO_SERVICE_OVERRIDES")
    if not target:
        return None

    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        logger.warning(
            "AUDIO_SERVICE_OVERRIDES: некорректное значение, ожидается 'module:attr'",
            extra={"value": target},
        )
        return None

    try:
        module = importlib.import_module(module_name)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "AUDIO_SERVICE_OVERRIDES: не удалось импортировать модуль",
            extra={"module": module_name, "error": str(exc)},
        )
        return None

    value = getattr(module, attr, None)
    if value is None:
        logger.warning(
            "AUDIO_SERVICE_OVERRIDES: атрибут не найден",
            extra={"module": module_name, "attr": attr},
        )
        return None

    if callable(value):
        try:
            value = value()
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "AUDIO_SERVICE_OVERRIDES: фабрика завершилась ошибкой",
                extra={"module": module_name, "attr": attr, "error": str(exc)},
            )
            return None

    if not isinstance(value, Mapping):
        logger.warning(
            "AUDIO_SERVICE_OVERRIDES: ожидается mapping",
            extra={"returned_type": type(value).__name__},
        )
        return None

    return value


__all__ = [
    "AUDIO_QUEUE_NAME",
    "DATABASE_URL",
    "IN_CONTAINER",
    "logger",
    "load_audio_service_overrides",
]
