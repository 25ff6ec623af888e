# secretaria/core/config.py

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from functools import lru_cache
from loguru import logger
from pathlib import Path

# Procura o .env subindo a partir deste arquivo e, por fim, no CWD
def find_dotenv_path(filename='.env', raise_error_if_not_found=False, usecwd=False) -> str | None:
    if usecwd or '__file__' not in globals(): start_dir = Path.cwd()
    else: start_dir = Path(__file__).resolve().parent
    current_dir = start_dir
    for _ in range(10):
        env_path = current_dir / filename
        if env_path.is_file(): logger.debug(f"Found {filename} file at: {env_path}"); return str(env_path)
        parent_dir = current_dir.parent
        if parent_dir == current_dir: break
        current_dir = parent_dir
    if not usecwd and '__file__' in globals():
        env_path_cwd = Path.cwd() / filename
        if env_path_cwd.is_file(): logger.debug(f"Found {filename} file at CWD: {env_path_cwd}"); return str(env_path_cwd)
    logger.debug(f"{filename} not found in parent directories of {start_dir} or CWD.")
    if raise_error_if_not_found: raise IOError(f'{filename} not found')
    return None

class Settings(BaseSettings):
    PROJECT_NAME: str = "Secretar.ia Chat Relay"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"
    FRONTEND_ORIGIN: str = "http://localhost:3000"

    # Database & Cache
    MONGODB_URI: str = "mongodb://localhost:27017/secretaria"
    MONGODB_DB_NAME: str | None = None # Sobrescreve o nome extraído da URI
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = Field(default=50, gt=0)
    REDIS_POOL_TIMEOUT_SECONDS: float = Field(default=5.0, gt=0) # Espera por conexão livre antes de falhar
    CELERY_BROKER_URL: str | None = None # Default: REDIS_URL
    CELERY_RESULT_BACKEND: str | None = None # Default: REDIS_URL

    # Automação (n8n) que recebe as mensagens do chat e gera a resposta da IA
    N8N_WEBHOOK_URL: str | None = None
    ASSISTANT_NAME: str = "Secretária"
    CHAT_SUBMIT_TIMEOUT_SECONDS: float = 15.0

    # Segredo compartilhado com o worker que publica respostas (opcional)
    CHAT_PUBLISH_API_KEY: str | None = None

    # Response Store (coleção system_configs)
    CHAT_RESPONSE_COLLECTION: str = "system_configs"
    CHAT_RESPONSE_KEY_PREFIX: str = "chat_response_"
    CHAT_RESPONSE_CONSUME_ON_READ: bool = True
    CHAT_RESPONSE_RETENTION_HOURS: int = Field(default=24, ge=1)
    CHAT_RESPONSE_SWEEP_MINUTES: int = Field(default=30, ge=1)

    # Broadcast Channel (Redis pub/sub)
    CHAT_CHANNEL_PREFIX: str = "chat_"
    CHAT_BROADCAST_EVENT: str = "ai-response"
    CHAT_BROADCAST_TIMEOUT_SECONDS: float = Field(default=2.0, gt=0)
    CHAT_BROADCAST_FLUSH_SECONDS: float = Field(default=0.5, ge=0)

    # Client Delivery Coordinator
    CHAT_POLL_INTERVAL_SECONDS: float = Field(default=3.0, gt=0)
    CHAT_POLL_MAX_ATTEMPTS: int = Field(default=40, ge=1)
    CHAT_GREETING: str = "Olá! Sou a assistente virtual. Como posso ajudar?"

    model_config = SettingsConfigDict(
        # .env primeiro, depois .env.local (que pode sobrescrever)
        env_file=tuple(p for p in (find_dotenv_path('.env'), find_dotenv_path('.env.local')) if p),
        env_file_encoding='utf-8',
        extra='ignore',
        case_sensitive=False,
    )

    @property
    def celery_broker_url(self) -> str:
        return self.CELERY_BROKER_URL or self.REDIS_URL

    @property
    def celery_result_backend(self) -> str:
        return self.CELERY_RESULT_BACKEND or self.REDIS_URL

@lru_cache()
def get_settings() -> Settings:
    """Carrega e valida as configurações da aplicação."""
    logger.info("Loading application settings...")
    env_files_found = [p for p in [find_dotenv_path('.env'), find_dotenv_path('.env.local')] if p]
    if env_files_found:
        logger.info(f"Loading environment variables from: {', '.join(env_files_found)}")
    else:
        logger.warning("No .env file found. Loading settings from system environment variables only.")

    try:
        settings_instance = Settings()

        required_vars = ['MONGODB_URI', 'REDIS_URL']
        missing = [k for k in required_vars if not getattr(settings_instance, k, None)]
        if missing:
            logger.critical(f"Missing critical environment variables: {', '.join(missing)}")
            raise ValueError(f"Missing critical environment variables: {', '.join(missing)}")

        if not settings_instance.N8N_WEBHOOK_URL:
            logger.warning("N8N_WEBHOOK_URL not set. Chat submissions will be rejected until it is configured.")
        if not settings_instance.CHAT_PUBLISH_API_KEY:
            logger.warning("CHAT_PUBLISH_API_KEY not set. The publish endpoint accepts unauthenticated callers.")

        logger.info("Settings loaded and validated successfully.")
        return settings_instance
    except ValueError as val_err:
        logger.critical(f"CRITICAL ERROR in settings validation: {val_err}")
        raise SystemExit(f"Settings validation failed: {val_err}")
    except Exception as e:
        logger.critical(f"CRITICAL ERROR loading settings: {e}")
        raise SystemExit(f"Failed to load critical settings: {e}")

# Instância global das configurações para fácil importação
settings = get_settings()
