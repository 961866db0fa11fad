import os
from dataclasses import dataclass
from typing import Optional


DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o"
DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_FRONTEND_ORIGINS = "http://localhost:5173,http://127.0.0.1:5173"
DEFAULT_SPEECH_TIMEOUT_SECONDS = 600.0
GOOGLE_CREDENTIAL_ENV_VARS = (
    "GOOGLE_APPLICATION_CREDENTIALS",
    "GOOGLE_APPLICATION_CREDENTIALS_JSON",
    "GOOGLE_APPLICATION_CREDENTIALS_B64",
)


def parse_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class LLMSettings:
    api_key: str
    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_MODEL
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    auth_mode: str = "authorization"
    temperature: float = 0.7
    max_tokens: int = 6000


@dataclass(frozen=True)
class Settings:
    llm: Optional[LLMSettings]
    database_url: str = ""
    frontend_origins: tuple[str, ...] = ()
    language_code: str = "en-US"
    run_inline: bool = False
    default_plan: Optional[str] = None
    speech_configured: bool = False
    speech_timeout_seconds: float = DEFAULT_SPEECH_TIMEOUT_SECONDS


def load_llm_settings() -> Optional[LLMSettings]:
    api_key = os.getenv("PRESENCE_LLM_API_KEY", "").strip()
    if not api_key:
        return None
    return LLMSettings(
        api_key=api_key,
        base_url=os.getenv("PRESENCE_LLM_BASE_URL", DEFAULT_BASE_URL).strip() or DEFAULT_BASE_URL,
        model=os.getenv("PRESENCE_LLM_MODEL", DEFAULT_MODEL).strip() or DEFAULT_MODEL,
        timeout_seconds=float(os.getenv("PRESENCE_LLM_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS))),
        auth_mode=os.getenv("PRESENCE_LLM_AUTH_MODE", "authorization").strip().lower(),
    )


def load_settings() -> Settings:
    origins = os.getenv("FRONTEND_ORIGINS", DEFAULT_FRONTEND_ORIGINS)
    return Settings(
        llm=load_llm_settings(),
        database_url=os.getenv("DATABASE_URL", "").strip(),
        frontend_origins=tuple(origin.strip() for origin in origins.split(",") if origin.strip()),
        language_code=os.getenv("PRESENCE_LANGUAGE_CODE", "en-US").strip() or "en-US",
        run_inline=parse_bool_env("PRESENCE_RUN_INLINE", False),
        default_plan=os.getenv("PRESENCE_DEFAULT_PLAN", "").strip() or None,
        speech_configured=any(os.getenv(name, "").strip() for name in GOOGLE_CREDENTIAL_ENV_VARS),
        speech_timeout_seconds=float(
            os.getenv("PRESENCE_SPEECH_TIMEOUT_SECONDS", str(DEFAULT_SPEECH_TIMEOUT_SECONDS))
        ),
    )
