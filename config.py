import os
from typing import List


def normalize_cors_origins(origins_str: str) -> List[str]:
    """
    Normalize a comma-separated string of CORS origins.

    Handles:
    - Trim whitespace from each origin
    - Remove surrounding quotes (" and ')
    - Remove trailing slashes (/)
    - Filter out empty entries

    Args:
        origins_str: Comma-separated string of origins

    Returns:
        List of normalized, non-empty origins
    """
    if not origins_str:
        return []

    normalized = []
    for origin in origins_str.split(","):
        origin = origin.strip()

        if (origin.startswith('"') and origin.endswith('"')) or \
           (origin.startswith("'") and origin.endswith("'")):
            origin = origin[1:-1]

        origin = origin.strip()
        origin = origin.rstrip("/")

        if origin:
            normalized.append(origin)

    return normalized


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    # --- DATABASE ---
    DATABASE_URL = os.getenv("DATABASE_URL")

    # --- MICROSOFT GRAPH (Azure AD app registration) ---
    AZURE_CLIENT_ID = os.getenv("AZURE_CLIENT_ID", "")
    AZURE_CLIENT_SECRET = os.getenv("AZURE_CLIENT_SECRET", "")
    AZURE_TENANT_ID = os.getenv("AZURE_TENANT_ID", "common")
    GRAPH_BASE_URL = os.getenv("GRAPH_BASE_URL", "https://graph.microsoft.com/v1.0")
    GRAPH_TOKEN_ENDPOINT = os.getenv("GRAPH_TOKEN_ENDPOINT", "https://login.microsoftonline.com")
    GRAPH_SCOPES = "offline_access Files.ReadWrite.All Sites.Read.All"
    GRAPH_TIMEOUT_SECONDS = float(os.getenv("GRAPH_TIMEOUT_SECONDS", "30"))
    # 0 means retry throttled calls until Graph lets us through
    GRAPH_MAX_THROTTLE_RETRIES = int(os.getenv("GRAPH_MAX_THROTTLE_RETRIES", "10"))
    GRAPH_DEFAULT_RETRY_AFTER = int(os.getenv("GRAPH_DEFAULT_RETRY_AFTER", "5"))
    USE_MOCK_GRAPH = _env_bool("USE_MOCK_GRAPH")

    # --- CRAWL ---
    CRAWL_BATCH_SIZE = int(os.getenv("CRAWL_BATCH_SIZE", "50"))
    CRAWL_STALE_SECONDS = int(os.getenv("CRAWL_STALE_SECONDS", "120"))

    # --- AI ANALYSIS (Groq, OpenAI-compatible API) ---
    GROQ_API_KEY = os.getenv("GROQ_API_KEY", "")
    GROQ_BASE_URL = os.getenv("GROQ_BASE_URL", "https://api.groq.com/openai/v1")
    GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile")
    AI_CHUNK_SIZE = int(os.getenv("AI_CHUNK_SIZE", "500"))
    SUGGESTION_INSERT_BATCH = int(os.getenv("SUGGESTION_INSERT_BATCH", "500"))

    # --- CORS ---
    _DEFAULT_CORS_ORIGINS = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:3000",
    ]
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", ",".join(_DEFAULT_CORS_ORIGINS))
    # Optional regex for preview deployments, e.g. https://sp5s-[a-z0-9]+\.vercel\.app
    CORS_ORIGIN_REGEX = os.getenv("CORS_ORIGIN_REGEX", None)

    # --- LOGGING ---
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # --- FEATURE FLAGS ---
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED")
    SCHEDULER_INTERVAL_SECONDS = int(os.getenv("SCHEDULER_INTERVAL_SECONDS", "30"))
    RUN_MIGRATIONS_ON_STARTUP = _env_bool("RUN_MIGRATIONS_ON_STARTUP", "true")

    # --- SUPABASE JWT AUTH ---
    SUPABASE_JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET", None)

config = Config()
